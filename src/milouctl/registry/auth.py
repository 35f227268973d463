"""Registry authentication.

A credential is exchanged for a :class:`RegistrySession` in three steps:

1. the credential's shape is checked locally (no network traffic);
2. the GitHub API resolves the credential to a :class:`Principal`;
3. the container engine logs in to the registry and the session is verified
   by probing the manifest of a known image.

Steps 2 and 3 run under a bounded :class:`~milouctl.retry.RetryPolicy`. The
session lives in memory only; nothing here writes the credential to disk.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

import httpx

from ..config import RegistryConfig
from ..errors import FailureKind, PullFailureKind, StageFailure, classify_output
from ..providers.docker import DockerEngine, EngineError, combined_output
from ..retry import RetryPolicy
from .http import bearer_headers, build_client

LOGGER = logging.getLogger(__name__)

CREDENTIAL_PATTERNS = (
    re.compile(r"^gh[pousr]_[A-Za-z0-9_]{36,251}$"),
    re.compile(r"^github_pat_[A-Za-z0-9_]{22,255}$"),
)


class RegistryAuthError(RuntimeError):
    """Raised when a credential cannot be turned into a working session."""

    def __init__(
        self,
        message: str,
        *,
        classification: PullFailureKind | str,
        kind: FailureKind | None = None,
        raw_output: str | None = None,
    ) -> None:
        """Record the classification and any captured output."""
        super().__init__(message)
        self.classification = classification
        if kind is None:
            kind = (
                classification.failure_kind
                if isinstance(classification, PullFailureKind)
                else FailureKind.PERMANENT
            )
        self.kind = kind
        self.raw_output = raw_output

    def to_failure(self, stage: str = "registry-auth") -> StageFailure:
        """Return the terminal failure record for this error."""
        return StageFailure.build(
            stage,
            self.classification,
            str(self),
            kind=self.kind,
            raw_output=self.raw_output,
        )


@dataclass(frozen=True, slots=True)
class Principal:
    """Identity resolved from a credential."""

    login: str
    scopes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"login": self.login, "scopes": list(self.scopes)}


@dataclass(frozen=True, slots=True)
class RegistrySession:
    """A verified, process-lifetime registry session."""

    principal: Principal
    registry: str
    namespace: str
    credential: str = field(repr=False)
    established_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def scope(self) -> str:
        """Return the repository namespace the session was verified against."""
        return f"{self.registry}/{self.namespace}"

    def api_headers(self) -> dict[str, str]:
        """Return headers for authenticated API requests."""
        return bearer_headers(self.credential)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation without the credential."""
        return {
            "principal": self.principal.to_dict(),
            "scope": self.scope,
            "credential": redact(self.credential),
            "established_at": self.established_at.isoformat(timespec="seconds"),
        }


def validate_credential_shape(credential: str | None) -> bool:
    """Return ``True`` when *credential* looks like a GitHub token."""
    if not credential:
        return False
    return any(pattern.match(credential) for pattern in CREDENTIAL_PATTERNS)


def redact(credential: str | None) -> str:
    """Return a log-safe preview of *credential*."""
    if not credential:
        return "<empty>"
    if len(credential) <= 12:
        return "***"
    return f"{credential[:4]}...{credential[-4:]}"


@dataclass(slots=True)
class _LoginAttempt:
    session: RegistrySession | None
    error: RegistryAuthError | None


class RegistryAuthenticator:
    """Exchange a credential for a verified :class:`RegistrySession`."""

    def __init__(
        self,
        config: RegistryConfig,
        engine: DockerEngine,
        *,
        client: httpx.Client | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        """Wire the authenticator to its engine, HTTP client and retry policy."""
        self._config = config
        self._engine = engine
        self._client = client or build_client(config)
        self._policy = policy or RetryPolicy(
            max_attempts=config.login_attempts, interval=config.login_interval
        )

    def authenticate(self, credential: str) -> RegistrySession:
        """Return a verified session or raise :class:`RegistryAuthError`."""
        credential = (credential or "").strip()
        if not validate_credential_shape(credential):
            raise RegistryAuthError(
                "Credential does not match a known token format.",
                classification="credential-format",
                kind=FailureKind.VALIDATION,
            )
        LOGGER.debug("Authenticating with credential %s", redact(credential))

        try:
            principal = self._policy.run(
                lambda _attempt: self.resolve_principal(credential),
                retry_on=(httpx.RequestError,),
            )
        except httpx.RequestError as exc:
            raise RegistryAuthError(
                f"Cannot reach {self._config.api_base}: {exc}",
                classification=PullFailureKind.NETWORK,
                raw_output=str(exc),
            ) from exc
        LOGGER.info("Credential belongs to %s", principal.login)

        outcome = self._policy.run(
            lambda attempt: self._login_and_verify(principal, credential, attempt),
            retry_if=_should_retry,
        )
        if outcome.error is not None:
            raise outcome.error
        if outcome.session is None:
            raise RegistryAuthError(
                f"Login to {self._config.host} did not produce a session.",
                classification=PullFailureKind.UNKNOWN,
            )
        return outcome.session

    def resolve_principal(self, credential: str) -> Principal:
        """Return the account that owns *credential*."""
        url = f"{self._config.api_base}/user"
        response = self._client.get(url, headers=bearer_headers(credential))
        if response.status_code == httpx.codes.UNAUTHORIZED:
            raise RegistryAuthError(
                "The API rejected the credential (401 unauthorized).",
                classification=PullFailureKind.AUTHENTICATION,
                raw_output=response.text,
            )
        if response.status_code == httpx.codes.FORBIDDEN:
            raise RegistryAuthError(
                "The API refused the credential (403 forbidden).",
                classification=PullFailureKind.FORBIDDEN,
                raw_output=response.text,
            )
        if response.is_error:
            raise RegistryAuthError(
                f"Unexpected API response {response.status_code} from {url}.",
                classification=PullFailureKind.UNKNOWN,
                raw_output=response.text,
            )
        try:
            login = str(response.json().get("login") or "").strip()
        except ValueError as exc:
            raise RegistryAuthError(
                "API response was not valid JSON.",
                classification=PullFailureKind.UNKNOWN,
                raw_output=response.text,
            ) from exc
        if not login:
            raise RegistryAuthError(
                "API response did not include a login name.",
                classification=PullFailureKind.UNKNOWN,
                raw_output=response.text,
            )
        scopes_header = response.headers.get("X-OAuth-Scopes", "")
        scopes = tuple(scope.strip() for scope in scopes_header.split(",") if scope.strip())
        return Principal(login=login, scopes=scopes)

    def _login_and_verify(
        self, principal: Principal, credential: str, attempt: int
    ) -> _LoginAttempt:
        host = self._config.host
        LOGGER.debug("Registry login attempt %s for %s", attempt, principal.login)
        try:
            result = self._engine.login(host, principal.login, credential)
        except EngineError as exc:
            return _engine_unavailable(host, exc)
        if result.returncode != 0:
            output = combined_output(result)
            classification = classify_output(output)
            return _LoginAttempt(
                session=None,
                error=RegistryAuthError(
                    f"Login to {host} failed ({classification.value}).",
                    classification=classification,
                    raw_output=output,
                ),
            )

        probe = f"{self._config.repository(self._config.probe_image)}:latest"
        try:
            verify = self._engine.manifest_inspect(probe)
        except EngineError as exc:
            return _engine_unavailable(host, exc)
        if verify.returncode != 0:
            output = combined_output(verify)
            classification = classify_output(output)
            # A freshly established session may not be active yet.
            kind = None
            if classification is PullFailureKind.AUTHENTICATION:
                kind = FailureKind.TRANSIENT
            return _LoginAttempt(
                session=None,
                error=RegistryAuthError(
                    f"Logged in to {host} but cannot read {probe} ({classification.value}).",
                    classification=classification,
                    kind=kind,
                    raw_output=output,
                ),
            )

        return _LoginAttempt(
            session=RegistrySession(
                principal=principal,
                registry=host,
                namespace=self._config.namespace,
                credential=credential,
            ),
            error=None,
        )


def _engine_unavailable(host: str, exc: EngineError) -> _LoginAttempt:
    return _LoginAttempt(
        session=None,
        error=RegistryAuthError(
            f"Container engine unavailable for login to {host}: {exc}",
            classification=PullFailureKind.ENGINE,
            raw_output=exc.output or str(exc),
        ),
    )


def _should_retry(outcome: _LoginAttempt) -> bool:
    if outcome.error is None:
        return False
    return outcome.error.kind.retryable


__all__ = [
    "CREDENTIAL_PATTERNS",
    "Principal",
    "RegistryAuthError",
    "RegistryAuthenticator",
    "RegistrySession",
    "redact",
    "validate_credential_shape",
]
