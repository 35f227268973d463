"""Failure taxonomy, output classification and remediation lookup.

Every terminal failure that leaves a component is described by a
:class:`StageFailure`: the stage that failed, a best-guess classification, at
least one concrete remediation step and, where a subprocess was involved, the
raw captured output the classification was derived from.

Classification of subprocess output is textual and therefore approximate. The
rules below are evaluated in order and the first match wins; anything that
matches nothing is ``unknown``.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum


class FailureKind(str, Enum):
    """Coarse failure family used to decide retry behaviour."""

    VALIDATION = "validation"
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    RESOURCE = "resource"

    @property
    def retryable(self) -> bool:
        """Return ``True`` when a bounded automatic retry is worthwhile."""
        return self is FailureKind.TRANSIENT


class PullFailureKind(str, Enum):
    """Classification of a failed registry or engine interaction."""

    AUTHENTICATION = "authentication"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not-found"
    NETWORK = "network"
    DISK_SPACE = "disk-space"
    ENGINE = "engine"
    UNKNOWN = "unknown"

    @property
    def failure_kind(self) -> FailureKind:
        """Return the taxonomy family for this classification."""
        return _PULL_FAILURE_FAMILIES[self]


_PULL_FAILURE_FAMILIES: Mapping[PullFailureKind, FailureKind] = {
    PullFailureKind.AUTHENTICATION: FailureKind.PERMANENT,
    PullFailureKind.FORBIDDEN: FailureKind.PERMANENT,
    PullFailureKind.NOT_FOUND: FailureKind.PERMANENT,
    PullFailureKind.NETWORK: FailureKind.TRANSIENT,
    PullFailureKind.DISK_SPACE: FailureKind.RESOURCE,
    PullFailureKind.ENGINE: FailureKind.RESOURCE,
    PullFailureKind.UNKNOWN: FailureKind.TRANSIENT,
}

# Evaluated top to bottom; first match wins.
CLASSIFICATION_RULES: tuple[tuple[PullFailureKind, tuple[str, ...]], ...] = (
    (
        PullFailureKind.AUTHENTICATION,
        (
            "unauthorized",
            "authentication required",
            "login required",
            "invalid credentials",
            "incorrect username or password",
        ),
    ),
    (PullFailureKind.FORBIDDEN, ("denied", "forbidden", "403")),
    (
        PullFailureKind.NOT_FOUND,
        ("manifest unknown", "not found", "no such image", "does not exist"),
    ),
    (
        PullFailureKind.NETWORK,
        (
            "timeout",
            "timed out",
            "connection refused",
            "connection reset",
            "no such host",
            "tls handshake",
            "network is unreachable",
            "temporary failure",
        ),
    ),
    (
        PullFailureKind.DISK_SPACE,
        ("no space left", "disk full", "insufficient storage", "device space"),
    ),
)


def classify_output(output: str | None) -> PullFailureKind:
    """Classify captured engine/registry output by ordered substring matching."""
    text = (output or "").lower()
    if not text.strip():
        return PullFailureKind.UNKNOWN
    for kind, needles in CLASSIFICATION_RULES:
        if any(needle in text for needle in needles):
            return kind
    return PullFailureKind.UNKNOWN


REMEDIATIONS: Mapping[str, tuple[str, ...]] = {
    PullFailureKind.AUTHENTICATION.value: (
        "Verify the registry token has not expired or been revoked.",
        "Ensure the token carries the 'read:packages' scope.",
        "Re-run with a fresh token: https://github.com/settings/tokens",
    ),
    PullFailureKind.FORBIDDEN.value: (
        "Ask an organisation owner to grant the account access to the image packages.",
        "Confirm the token belongs to an account that can read the repository.",
    ),
    PullFailureKind.NOT_FOUND.value: (
        "Check the image name and tag exist in the registry.",
        "Re-run with fixed versions (--fixed) or list available tags.",
    ),
    PullFailureKind.NETWORK.value: (
        "Check internet connectivity and DNS resolution for the registry host.",
        "Check firewall or proxy settings, then retry in a few minutes.",
    ),
    PullFailureKind.DISK_SPACE.value: (
        "Free disk space (for example 'docker system prune') and retry.",
    ),
    PullFailureKind.UNKNOWN.value: (
        "Inspect the captured output below and the container engine logs.",
        "Retry the operation with --verbose for more detail.",
    ),
    "credential-format": (
        "Provide a token shaped like ghp_<36 characters> or github_pat_<22+ characters>.",
    ),
    "certificate": (
        "Check the SSL directory is writable and review the certbot output in the log.",
        "Place a valid certificate pair at the SSL path and re-run with --strategy existing.",
    ),
    "engine": (
        "Start the container engine (for example 'systemctl start docker').",
        "Ensure the current user may talk to the engine socket.",
    ),
    "configuration": (
        "Check the configuration file and MILOUCTL_* environment variables.",
    ),
    "conflict": (
        "Stop the existing containers or re-run with --force-replace.",
    ),
    "timeout": (
        "Inspect the logs of the unhealthy services listed in the summary.",
        "Increase activation.health_timeout if the services are merely slow to start.",
    ),
    "no-images": (
        "Resolve the image pull failures listed above, or re-run with --accept-missing.",
    ),
}


def remediation_for(classification: str | PullFailureKind) -> tuple[str, ...]:
    """Return the remediation steps for *classification* (never empty)."""
    key = classification.value if isinstance(classification, PullFailureKind) else classification
    steps = REMEDIATIONS.get(key)
    if steps:
        return steps
    return REMEDIATIONS[PullFailureKind.UNKNOWN.value]


@dataclass(frozen=True, slots=True)
class StageFailure:
    """Terminal failure surfaced to callers of the pipeline."""

    stage: str
    classification: str
    message: str
    kind: FailureKind
    remediation: tuple[str, ...] = field(default_factory=tuple)
    raw_output: str | None = None

    @classmethod
    def build(
        cls,
        stage: str,
        classification: str | PullFailureKind,
        message: str,
        *,
        kind: FailureKind | None = None,
        raw_output: str | None = None,
        remediation: Sequence[str] | None = None,
    ) -> StageFailure:
        """Create a failure, filling remediation and kind from the lookup tables."""
        if isinstance(classification, PullFailureKind):
            label = classification.value
            resolved_kind = kind or classification.failure_kind
        else:
            label = classification
            resolved_kind = kind or FailureKind.PERMANENT
        steps = tuple(remediation) if remediation else remediation_for(label)
        return cls(
            stage=stage,
            classification=label,
            message=message,
            kind=resolved_kind,
            remediation=steps,
            raw_output=raw_output,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "stage": self.stage,
            "classification": self.classification,
            "kind": self.kind.value,
            "message": self.message,
            "remediation": list(self.remediation),
            "raw_output": self.raw_output,
        }


__all__ = [
    "CLASSIFICATION_RULES",
    "FailureKind",
    "PullFailureKind",
    "REMEDIATIONS",
    "StageFailure",
    "classify_output",
    "remediation_for",
]
