"""Tests for the certificate provisioning cascade."""
from __future__ import annotations

import json
import stat
from collections.abc import Callable
from dataclasses import replace
from pathlib import Path

import pytest
from cryptography import x509

from milouctl import certificates as certificates_module
from milouctl.certificates import (
    CertificateProvisioner,
    CertificateProvisionError,
    MinimalFallback,
    ProvisionContext,
    is_public_domain,
)
from milouctl.config import SSLConfig, contact_email_for
from milouctl.providers.certbot import AcmeMaterial, CertbotError
from milouctl.tls import CertificateBundle, CertificateError, CertificateValidator

PairFactory = Callable[..., tuple[Path, Path]]


class FakeCertbot:
    """Records calls and writes issued material into a live directory."""

    def __init__(
        self,
        live_dir: Path,
        make_pair: PairFactory | None = None,
        *,
        error: str | None = None,
    ) -> None:
        self.live_dir = live_dir
        self.make_pair = make_pair
        self.error = error
        self.obtained: list[tuple[str, str]] = []

    def ensure_available(self, *, allow_install: bool) -> None:
        if self.error:
            raise CertbotError(self.error)

    def obtain(self, domain: str, email: str) -> AcmeMaterial:
        self.obtained.append((domain, email))
        assert self.make_pair is not None
        cert, key = self.make_pair(
            self.live_dir / domain, name="issued", common_name=domain, dns_names=[domain]
        )
        fullchain = cert.with_name("fullchain.pem")
        privkey = key.with_name("privkey.pem")
        cert.rename(fullchain)
        key.rename(privkey)
        return AcmeMaterial(fullchain=fullchain, privkey=privkey)


class ExplodingStrategy:
    """A strategy that always fails."""

    name = "explode"

    def applies(self, context: ProvisionContext) -> bool:
        return True

    def attempt(self, context: ProvisionContext) -> CertificateBundle | None:
        raise CertificateError("generation backend unavailable")


def _provisioner(
    config: SSLConfig,
    certbot: FakeCertbot,
    *,
    public: bool = False,
) -> CertificateProvisioner:
    return CertificateProvisioner(
        config,
        certbot=certbot,  # type: ignore[arg-type]
        resolver=lambda _domain: public,
        admin_email="ops@example.com",
    )


def test_localhost_generates_local_certificate_without_acme(
    tmp_path: Path, ssl_config: SSLConfig
) -> None:
    """Loopback domains never reach the ACME tool."""
    certbot = FakeCertbot(tmp_path / "live")
    result = _provisioner(ssl_config, certbot, public=True).provision(
        "localhost", strategy="public-ca"
    )

    assert result.strategy == "localhost"
    assert certbot.obtained == []
    assert result.bundle.cert_path == ssl_config.path / "milou.crt"
    assert CertificateValidator().validate(result.bundle, "localhost")
    info = json.loads((ssl_config.path / "milou.info.json").read_text())
    assert info["domain"] == "localhost"
    assert info["strategy"] == "localhost"


def test_provision_is_idempotent(tmp_path: Path, ssl_config: SSLConfig) -> None:
    """A second run reuses the valid pair without rewriting it."""
    provisioner = _provisioner(ssl_config, FakeCertbot(tmp_path / "live"))
    first = provisioner.provision("localhost")
    before = first.bundle.cert_path.read_bytes()

    second = provisioner.provision("localhost")

    assert second.strategy == "reuse"
    assert second.generated is False
    assert second.bundle.cert_path.read_bytes() == before


def test_public_domain_uses_acme_certificate(
    tmp_path: Path, ssl_config: SSLConfig, make_pair: PairFactory
) -> None:
    """A resolvable public domain is issued through the ACME tool."""
    certbot = FakeCertbot(tmp_path / "live", make_pair)

    result = _provisioner(ssl_config, certbot, public=True).provision("milou.example.com")

    assert result.strategy == "public-ca"
    assert certbot.obtained == [("milou.example.com", "ops@example.com")]
    assert CertificateValidator().validate(result.bundle, "milou.example.com")


def test_acme_failure_falls_back_to_self_signed(tmp_path: Path, ssl_config: SSLConfig) -> None:
    """When the ACME path fails a domain-scoped self-signed pair is generated."""
    certbot = FakeCertbot(tmp_path / "live", error="certbot is not installed.")

    result = _provisioner(ssl_config, certbot, public=True).provision("milou.example.com")

    assert result.strategy == "self-signed"
    assert CertificateValidator().validate(result.bundle, "milou.example.com")


def test_self_signed_hint_skips_acme(
    tmp_path: Path, ssl_config: SSLConfig, make_pair: PairFactory
) -> None:
    """The self-signed hint never calls the ACME tool."""
    certbot = FakeCertbot(tmp_path / "live", make_pair)

    result = _provisioner(ssl_config, certbot, public=True).provision(
        "milou.example.com", strategy="self-signed"
    )

    assert result.strategy == "self-signed"
    assert certbot.obtained == []


def test_private_address_never_uses_acme(
    tmp_path: Path, ssl_config: SSLConfig, make_pair: PairFactory
) -> None:
    """Private addresses get a self-signed pair whatever the hint."""
    certbot = FakeCertbot(tmp_path / "live", make_pair)

    result = _provisioner(ssl_config, certbot, public=True).provision(
        "192.168.1.10", strategy="public-ca"
    )

    assert result.strategy == "self-signed"
    assert certbot.obtained == []
    assert CertificateValidator().validate(result.bundle, "192.168.1.10")


def test_legacy_pair_is_consolidated(
    tmp_path: Path, ssl_config: SSLConfig, make_pair: PairFactory
) -> None:
    """A validating pair under a legacy location is copied into place."""
    legacy = tmp_path / "legacy"
    make_pair(legacy, name="server", common_name="milou.example.com")
    config = replace(ssl_config, legacy_paths=(tmp_path / "empty", legacy))

    result = _provisioner(config, FakeCertbot(tmp_path / "live")).provision("milou.example.com")

    assert result.strategy == "consolidate"
    assert (config.path / "milou.crt").read_bytes() == (legacy / "server.crt").read_bytes()
    assert (legacy / "server.crt").exists()


def test_invalid_pair_is_moved_aside_before_regeneration(
    tmp_path: Path, ssl_config: SSLConfig, make_pair: PairFactory
) -> None:
    """A pair for another domain is renamed aside, never overwritten in place."""
    make_pair(ssl_config.path, common_name="other.example.org")

    result = _provisioner(ssl_config, FakeCertbot(tmp_path / "live")).provision("localhost")

    assert result.strategy == "localhost"
    assert len(result.moved_aside) == 2
    assert all(".invalid." in path.name for path in result.moved_aside)
    assert all(path.exists() for path in result.moved_aside)


def test_force_regenerates_valid_pair(tmp_path: Path, ssl_config: SSLConfig) -> None:
    """Forcing skips reuse and moves the current pair aside."""
    provisioner = _provisioner(ssl_config, FakeCertbot(tmp_path / "live"))
    provisioner.provision("localhost")

    result = provisioner.provision("localhost", force=True)

    assert result.strategy == "localhost"
    assert [attempt.strategy for attempt in result.attempts] == ["generate"]
    assert len(result.moved_aside) == 2


def test_existing_hint_fails_without_a_pair(tmp_path: Path, ssl_config: SSLConfig) -> None:
    """With the existing hint nothing is generated."""
    provisioner = _provisioner(ssl_config, FakeCertbot(tmp_path / "live"))

    with pytest.raises(CertificateProvisionError) as excinfo:
        provisioner.provision("localhost", strategy="existing")

    assert [attempt.strategy for attempt in excinfo.value.attempts] == ["reuse", "consolidate"]
    assert excinfo.value.invalid_input is False
    assert not (ssl_config.path / "milou.crt").exists()


def test_minimal_fallback_runs_when_generation_fails(ssl_config: SSLConfig) -> None:
    """The minimal strategy still yields a usable, short-lived pair."""
    provisioner = CertificateProvisioner(
        ssl_config, strategies=[ExplodingStrategy(), MinimalFallback()]
    )

    result = provisioner.provision("box.example.net")

    assert result.strategy == "minimal"
    assert result.attempts[0].succeeded is False
    certificate = x509.load_pem_x509_certificate(result.bundle.cert_path.read_bytes())
    with pytest.raises(x509.ExtensionNotFound):
        certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert "L=Minimal" in certificate.subject.rfc4514_string()


@pytest.mark.parametrize(("domain", "strategy"), [("", None), ("localhost", "letsencrypt")])
def test_invalid_input_is_flagged(ssl_config: SSLConfig, domain: str, strategy: str | None) -> None:
    """Empty domains and unknown hints are rejected as invalid input."""
    provisioner = CertificateProvisioner(ssl_config, strategies=[])

    with pytest.raises(CertificateProvisionError) as excinfo:
        provisioner.provision(domain, strategy=strategy)

    assert excinfo.value.invalid_input is True


def test_inspect_reports_validity(tmp_path: Path, ssl_config: SSLConfig) -> None:
    """Inspection loads the target pair and validates it for the domain."""
    provisioner = _provisioner(ssl_config, FakeCertbot(tmp_path / "live"))
    provisioner.provision("localhost")

    bundle, valid = provisioner.inspect("localhost")
    _, other = provisioner.inspect("milou.example.com")

    assert valid is True
    assert bundle.not_after is not None
    assert other is False


def test_is_public_domain_heuristic() -> None:
    """Local names and malformed hosts are never public."""
    always = lambda _domain: True  # noqa: E731

    assert is_public_domain("milou.example.com", resolver=always) is True
    assert is_public_domain("milou.example.com", resolver=lambda _domain: False) is False
    assert is_public_domain("localhost", resolver=always) is False
    assert is_public_domain("10.1.2.3", resolver=always) is False
    assert is_public_domain("not_a_host", resolver=always) is False


@pytest.mark.parametrize("domain", ["a" * 60 + ".example.com", "münchen.example"])
def test_self_signed_handles_long_and_international_domains(
    tmp_path: Path, ssl_config: SSLConfig, domain: str
) -> None:
    """Names past the CN limit or outside ASCII still produce a domain certificate."""
    result = _provisioner(ssl_config, FakeCertbot(tmp_path / "live")).provision(
        domain, strategy="self-signed"
    )

    assert result.strategy == "self-signed"
    assert [attempt.strategy for attempt in result.attempts if attempt.succeeded] == ["generate"]
    assert CertificateValidator().validate(result.bundle, domain)


def test_copied_keys_are_never_world_readable(
    tmp_path: Path,
    ssl_config: SSLConfig,
    make_pair: PairFactory,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Keys copied from the ACME live directory land with 0600 before re-chmod."""
    modes: list[int] = []

    def record_modes(cert: Path, key: Path) -> None:
        modes.append(stat.S_IMODE(key.stat().st_mode))

    monkeypatch.setattr(certificates_module, "secure_permissions", record_modes)
    certbot = FakeCertbot(tmp_path / "live", make_pair)

    result = _provisioner(ssl_config, certbot, public=True).provision("milou.example.com")

    assert result.strategy == "public-ca"
    assert modes and all(mode == 0o600 for mode in modes)


def test_acme_contact_matches_config_default(
    tmp_path: Path, ssl_config: SSLConfig, make_pair: PairFactory
) -> None:
    """Without an admin address the ACME contact is derived like the config's."""
    certbot = FakeCertbot(tmp_path / "live", make_pair)
    provisioner = CertificateProvisioner(
        ssl_config,
        certbot=certbot,  # type: ignore[arg-type]
        resolver=lambda _domain: True,
    )

    provisioner.provision("milou.example.com")

    assert certbot.obtained == [
        ("milou.example.com", contact_email_for("milou.example.com"))
    ]
    assert contact_email_for("milou.example.com") == "admin@milou.example.com"
