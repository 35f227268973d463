"""Tests for failure classification and remediation lookup."""
from __future__ import annotations

import pytest

from milouctl.errors import (
    FailureKind,
    PullFailureKind,
    StageFailure,
    classify_output,
    remediation_for,
)


@pytest.mark.parametrize(
    ("output", "expected"),
    [
        ("Error response from daemon: unauthorized: authentication required", "authentication"),
        ("denied: permission_denied: read_package", "forbidden"),
        ("manifest unknown: manifest unknown", "not-found"),
        ("Get https://ghcr.io/v2/: dial tcp: i/o timeout", "network"),
        ("write /var/lib/docker/tmp: no space left on device", "disk-space"),
        ("something unexpected happened", "unknown"),
        ("", "unknown"),
    ],
)
def test_classify_output_matches_first_rule(output: str, expected: str) -> None:
    """Each family of engine messages maps onto its classification."""
    assert classify_output(output).value == expected


def test_classify_output_prefers_earlier_rules() -> None:
    """Output matching several rules takes the first one in order."""
    output = "unauthorized: repository does not exist or may require authorization"

    assert classify_output(output) is PullFailureKind.AUTHENTICATION


def test_classify_output_is_case_insensitive() -> None:
    """Matching ignores the case of the captured output."""
    assert classify_output("NO SUCH HOST") is PullFailureKind.NETWORK


def test_failure_kinds_drive_retry_decisions() -> None:
    """Only transient families are retryable."""
    assert PullFailureKind.NETWORK.failure_kind.retryable is True
    assert PullFailureKind.AUTHENTICATION.failure_kind.retryable is False
    assert PullFailureKind.DISK_SPACE.failure_kind is FailureKind.RESOURCE
    assert FailureKind.VALIDATION.retryable is False


def test_every_classification_has_remediation() -> None:
    """Remediation is never empty, including for unknown labels."""
    for kind in PullFailureKind:
        assert remediation_for(kind)
    assert remediation_for("not-a-real-label") == remediation_for(PullFailureKind.UNKNOWN)


def test_stage_failure_build_fills_kind_and_remediation() -> None:
    """Building from a pull classification derives kind and remediation."""
    failure = StageFailure.build(
        "images", PullFailureKind.NOT_FOUND, "missing", raw_output="manifest unknown"
    )

    assert failure.classification == "not-found"
    assert failure.kind is FailureKind.PERMANENT
    assert failure.remediation == remediation_for(PullFailureKind.NOT_FOUND)
    assert failure.to_dict()["raw_output"] == "manifest unknown"


def test_stage_failure_build_accepts_explicit_overrides() -> None:
    """Explicit kind and remediation replace the looked-up values."""
    failure = StageFailure.build(
        "activation",
        "timeout",
        "slow",
        kind=FailureKind.TRANSIENT,
        remediation=["wait longer"],
    )

    assert failure.kind is FailureKind.TRANSIENT
    assert failure.remediation == ("wait longer",)
