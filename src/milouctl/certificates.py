"""Certificate provisioning cascade.

The provisioner tries an ordered list of strategies and stops at the first
that yields a bundle passing :meth:`CertificateValidator.validate`:

1. ``reuse``: the pair already at ``<ssl.path>/<name>.crt|key``.
2. ``consolidate``: the first validating pair under a legacy location, copied
   into place.
3. ``generate``: a localhost certificate for loopback names; otherwise a
   public-CA certificate when the domain looks public and certbot is usable,
   falling back to a self-signed certificate for the domain.
4. ``minimal``: a bare self-signed certificate with a short lifetime.

A pair already at the target path is renamed aside with a
``.invalid.<unixtime>`` suffix before anything overwrites it.
"""
from __future__ import annotations

import json
import logging
import re
import shutil
import socket
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from cryptography.x509.oid import NameOID

from .config import SSLConfig, contact_email_for
from .providers.certbot import CertbotError, CertbotProvider
from .tls import (
    CertificateBundle,
    CertificateError,
    CertificateValidator,
    domain_names,
    generate_self_signed,
    is_local_domain,
    is_loopback_domain,
    localhost_names,
    rename_aside,
    secure_permissions,
    write_private_key,
)

LOGGER = logging.getLogger(__name__)

HOSTNAME_PATTERN = re.compile(
    r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$"
)
LEGACY_PAIR_NAMES = ("server",)

STRATEGY_HINTS = ("auto", "existing", "self-signed", "public-ca")


class CertificateProvisionError(RuntimeError):
    """Raised when every provisioning strategy failed."""

    def __init__(
        self,
        message: str,
        *,
        attempts: Sequence[StrategyAttempt] = (),
        invalid_input: bool = False,
    ) -> None:
        """Store *message* and the per-strategy attempt log."""
        super().__init__(message)
        self.attempts = tuple(attempts)
        self.invalid_input = invalid_input


@dataclass(frozen=True, slots=True)
class StrategyAttempt:
    """Outcome of one strategy in the cascade."""

    strategy: str
    succeeded: bool
    detail: str

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"strategy": self.strategy, "succeeded": self.succeeded, "detail": self.detail}


@dataclass(frozen=True, slots=True)
class ProvisionResult:
    """The bundle produced by :meth:`CertificateProvisioner.provision`."""

    bundle: CertificateBundle
    attempts: tuple[StrategyAttempt, ...]
    moved_aside: tuple[Path, ...] = ()

    @property
    def strategy(self) -> str:
        """Return the name of the strategy that produced the bundle."""
        return self.bundle.strategy

    @property
    def generated(self) -> bool:
        """Return ``True`` when new material was written during this run."""
        return self.bundle.strategy != ReuseExisting.name

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bundle": self.bundle.to_dict(),
            "strategy": self.strategy,
            "generated": self.generated,
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "moved_aside": [str(path) for path in self.moved_aside],
        }


@dataclass(slots=True)
class ProvisionContext:
    """Per-run state shared by the strategies."""

    domain: str
    hint: str
    force: bool
    email: str
    config: SSLConfig
    ssl_path: Path
    validator: CertificateValidator
    moved_aside: list[Path] = field(default_factory=list)
    prepared: bool = False

    @property
    def cert_path(self) -> Path:
        """Return the fixed certificate path."""
        return self.ssl_path / f"{self.config.name}.crt"

    @property
    def key_path(self) -> Path:
        """Return the fixed private key path."""
        return self.ssl_path / f"{self.config.name}.key"

    def prepare_target(self) -> None:
        """Rename any existing pair aside once, before the first write."""
        if self.prepared:
            return
        self.ssl_path.mkdir(parents=True, exist_ok=True)
        for path in (self.cert_path, self.key_path):
            moved = rename_aside(path)
            if moved is not None:
                self.moved_aside.append(moved)
        self.prepared = True

    def verify(self, strategy: str) -> CertificateBundle:
        """Re-assert permissions and validate the pair at the target path."""
        secure_permissions(self.cert_path, self.key_path)
        bundle = self.validator.load(
            self.cert_path, self.key_path, domain=self.domain, strategy=strategy
        )
        if not self.validator.validate(bundle, self.domain):
            raise CertificateError(f"{strategy} produced a certificate that does not validate.")
        return bundle


class CertificateStrategy(Protocol):
    """One step of the provisioning cascade.

    ``attempt`` returns a bundle on success, ``None`` when the strategy had
    nothing to offer, and raises :class:`CertificateError` (or a provider
    error) when it tried and failed.
    """

    name: str

    def applies(self, context: ProvisionContext) -> bool:
        """Return ``True`` when the strategy should run for *context*."""

    def attempt(self, context: ProvisionContext) -> CertificateBundle | None:
        """Try to produce a valid bundle at the target path."""


class ReuseExisting:
    """Keep a valid pair that already sits at the target path."""

    name = "reuse"

    def applies(self, context: ProvisionContext) -> bool:
        return not context.force

    def attempt(self, context: ProvisionContext) -> CertificateBundle | None:
        bundle = context.validator.load(
            context.cert_path, context.key_path, domain=context.domain, strategy=self.name
        )
        if context.validator.validate(bundle, context.domain):
            LOGGER.info("Reusing existing certificate %s", context.cert_path)
            return bundle
        return None


class ConsolidateLegacy:
    """Copy the first validating pair found under a legacy location."""

    name = "consolidate"

    def __init__(self, candidates: Sequence[Path]) -> None:
        """Search *candidates* in order."""
        self._candidates = tuple(candidates)

    def applies(self, context: ProvisionContext) -> bool:
        return not context.force

    def attempt(self, context: ProvisionContext) -> CertificateBundle | None:
        target_dir = _resolved(context.ssl_path)
        for directory in self._candidates:
            directory = directory.expanduser()
            if _resolved(directory) == target_dir:
                continue
            for stem in (context.config.name, *LEGACY_PAIR_NAMES):
                cert = directory / f"{stem}.crt"
                key = directory / f"{stem}.key"
                if not cert.is_file() or not key.is_file():
                    continue
                candidate = context.validator.load(cert, key, domain=context.domain)
                if not context.validator.validate(candidate, context.domain):
                    LOGGER.debug("Legacy pair %s does not validate", cert)
                    continue
                context.prepare_target()
                try:
                    shutil.copyfile(cert, context.cert_path)
                    write_private_key(context.key_path, key.read_bytes())
                except OSError as exc:
                    raise CertificateError(
                        f"Cannot copy legacy pair from {directory}: {exc}"
                    ) from exc
                LOGGER.info(
                    "Consolidated certificate from %s into %s", directory, context.ssl_path
                )
                return context.verify(self.name)
        return None


class DomainAwareGeneration:
    """Generate material suited to the requested domain."""

    name = "generate"

    def __init__(
        self,
        certbot: CertbotProvider,
        *,
        resolver: Callable[[str], bool] | None = None,
    ) -> None:
        """Use *certbot* for public certificates and *resolver* for DNS checks."""
        self._certbot = certbot
        self._resolver = resolver or resolves

    def applies(self, context: ProvisionContext) -> bool:
        return context.hint != "existing"

    def attempt(self, context: ProvisionContext) -> CertificateBundle | None:
        domain = context.domain
        context.prepare_target()
        if is_loopback_domain(domain):
            dns, ips = localhost_names(domain)
            LOGGER.info("Generating localhost certificate for %s", domain)
            generate_self_signed(
                context.cert_path,
                context.key_path,
                common_name=domain,
                dns_names=dns,
                ip_addresses=ips,
                days=context.config.localhost_validity_days,
                key_size=context.config.key_size,
            )
            return context.verify("localhost")

        if self._wants_public_ca(context):
            try:
                return self._obtain_public(context)
            except (CertbotError, CertificateError, OSError) as exc:
                LOGGER.warning("Public CA certificate failed for %s: %s", domain, exc)

        dns, ips = domain_names(domain)
        LOGGER.info("Generating self-signed certificate for %s", domain)
        generate_self_signed(
            context.cert_path,
            context.key_path,
            common_name=domain,
            dns_names=dns,
            ip_addresses=ips,
            days=context.config.validity_days,
            key_size=context.config.key_size,
        )
        return context.verify("self-signed")

    def _wants_public_ca(self, context: ProvisionContext) -> bool:
        if context.hint == "self-signed" or is_local_domain(context.domain):
            return False
        if context.hint == "public-ca":
            return True
        return is_public_domain(context.domain, resolver=self._resolver)

    def _obtain_public(self, context: ProvisionContext) -> CertificateBundle:
        self._certbot.ensure_available(allow_install=context.config.install_acme_tool)
        LOGGER.info("Requesting public CA certificate for %s", context.domain)
        material = self._certbot.obtain(context.domain, context.email)
        shutil.copyfile(material.fullchain, context.cert_path)
        write_private_key(context.key_path, material.privkey.read_bytes())
        return context.verify("public-ca")


class MinimalFallback:
    """Last resort: a short-lived self-signed certificate with no extensions."""

    name = "minimal"

    def applies(self, context: ProvisionContext) -> bool:
        return context.hint != "existing"

    def attempt(self, context: ProvisionContext) -> CertificateBundle | None:
        context.prepare_target()
        LOGGER.warning("Generating minimal fallback certificate for %s", context.domain)
        generate_self_signed(
            context.cert_path,
            context.key_path,
            common_name=context.domain,
            days=context.config.minimal_validity_days,
            key_size=context.config.key_size,
            subject_fields=(
                (NameOID.COUNTRY_NAME, "US"),
                (NameOID.STATE_OR_PROVINCE_NAME, "Fallback"),
                (NameOID.LOCALITY_NAME, "Minimal"),
                (NameOID.ORGANIZATION_NAME, "Milou"),
            ),
        )
        return context.verify(self.name)


class CertificateProvisioner:
    """Run the strategy cascade and persist the resulting bundle."""

    def __init__(
        self,
        config: SSLConfig,
        *,
        validator: CertificateValidator | None = None,
        certbot: CertbotProvider | None = None,
        strategies: Sequence[CertificateStrategy] | None = None,
        resolver: Callable[[str], bool] | None = None,
        admin_email: str | None = None,
    ) -> None:
        """Build the default cascade unless *strategies* is supplied."""
        self._config = config
        self._validator = validator or CertificateValidator()
        self._admin_email = admin_email
        if strategies is None:
            provider = certbot or CertbotProvider(
                certbot_bin=config.certbot_bin,
                live_dir=config.acme_live_dir,
                proxy_container=config.proxy_container or None,
                docker_bin=config.docker_bin,
            )
            strategies = default_strategies(config, provider, resolver=resolver)
        self._strategies = tuple(strategies)

    @property
    def validator(self) -> CertificateValidator:
        """Return the validator used by the cascade."""
        return self._validator

    def provision(
        self,
        domain: str,
        ssl_path: Path | None = None,
        *,
        strategy: str | None = None,
        force: bool = False,
    ) -> ProvisionResult:
        """Return a valid bundle for *domain*, raising when every strategy failed."""
        hint = (strategy or self._config.strategy).strip().lower()
        if hint not in STRATEGY_HINTS:
            raise CertificateProvisionError(
                f"Unsupported certificate strategy '{hint}'.", invalid_input=True
            )
        domain = domain.strip()
        if not domain:
            raise CertificateProvisionError(
                "A domain is required to provision a certificate.", invalid_input=True
            )

        context = ProvisionContext(
            domain=domain,
            hint=hint,
            force=force,
            email=contact_email_for(domain, self._admin_email),
            config=self._config,
            ssl_path=(ssl_path or self._config.path).expanduser(),
            validator=self._validator,
        )
        if force:
            context.prepare_target()

        attempts: list[StrategyAttempt] = []
        for step in self._strategies:
            if not step.applies(context):
                continue
            try:
                bundle = step.attempt(context)
            except (CertificateError, CertbotError, OSError) as exc:
                LOGGER.warning("Certificate strategy %s failed: %s", step.name, exc)
                attempts.append(StrategyAttempt(step.name, False, str(exc)))
                continue
            if bundle is None:
                attempts.append(StrategyAttempt(step.name, False, "not applicable"))
                continue
            attempts.append(StrategyAttempt(step.name, True, str(bundle.cert_path)))
            result = ProvisionResult(
                bundle=bundle,
                attempts=tuple(attempts),
                moved_aside=tuple(context.moved_aside),
            )
            if result.generated:
                self._write_info(context, bundle)
            return result

        raise CertificateProvisionError(
            f"No certificate strategy succeeded for {domain}.", attempts=attempts
        )

    def inspect(self, domain: str, ssl_path: Path | None = None) -> tuple[CertificateBundle, bool]:
        """Return the bundle at the target path and whether it validates for *domain*."""
        path = (ssl_path or self._config.path).expanduser()
        bundle = self._validator.load(
            path / f"{self._config.name}.crt",
            path / f"{self._config.name}.key",
            domain=domain,
        )
        return bundle, self._validator.validate(bundle, domain)

    def _write_info(self, context: ProvisionContext, bundle: CertificateBundle) -> None:
        info_path = context.ssl_path / f"{self._config.name}.info.json"
        payload = {
            "domain": context.domain,
            "strategy": bundle.strategy,
            "issuer": bundle.issuer,
            "not_before": bundle.not_before.isoformat() if bundle.not_before else None,
            "not_after": bundle.not_after.isoformat() if bundle.not_after else None,
            "generated_at": datetime.now(UTC).isoformat(timespec="seconds"),
        }
        try:
            info_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        except OSError as exc:
            LOGGER.warning("Cannot write certificate info file %s: %s", info_path, exc)


def default_strategies(
    config: SSLConfig,
    certbot: CertbotProvider,
    *,
    resolver: Callable[[str], bool] | None = None,
) -> list[CertificateStrategy]:
    """Return the standard cascade in priority order."""
    return [
        ReuseExisting(),
        ConsolidateLegacy(config.legacy_paths),
        DomainAwareGeneration(certbot, resolver=resolver),
        MinimalFallback(),
    ]


def resolves(domain: str) -> bool:
    """Return ``True`` when *domain* resolves through DNS."""
    try:
        return bool(socket.getaddrinfo(domain, None))
    except (socket.gaierror, UnicodeError):
        return False


def is_public_domain(domain: str, *, resolver: Callable[[str], bool] = resolves) -> bool:
    """Return ``True`` for well-formed, non-local host names that resolve."""
    if is_local_domain(domain) or not HOSTNAME_PATTERN.match(domain):
        return False
    return resolver(domain)


def _resolved(path: Path) -> Path:
    try:
        return path.expanduser().resolve()
    except OSError:
        return path.expanduser().absolute()


__all__ = [
    "CertificateProvisionError",
    "CertificateProvisioner",
    "CertificateStrategy",
    "ConsolidateLegacy",
    "DomainAwareGeneration",
    "MinimalFallback",
    "ProvisionContext",
    "ProvisionResult",
    "ReuseExisting",
    "STRATEGY_HINTS",
    "StrategyAttempt",
    "default_strategies",
    "is_public_domain",
    "resolves",
]
