"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from milouctl.config import SSLConfig

PairFactory = Callable[..., tuple[Path, Path]]


def _write_pair(
    directory: Path,
    *,
    name: str = "milou",
    common_name: str = "example.com",
    dns_names: Sequence[str] = (),
    valid_from: datetime | None = None,
    valid_to: datetime | None = None,
    mismatched_key: bool = False,
) -> tuple[Path, Path]:
    now = datetime.now(UTC)
    valid_from = valid_from or (now - timedelta(days=1))
    valid_to = valid_to or (now + timedelta(days=90))
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(valid_from)
        .not_valid_after(valid_to)
    )
    if dns_names:
        builder = builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(value) for value in dns_names]),
            critical=False,
        )
    cert = builder.sign(key, hashes.SHA256())
    written_key = key
    if mismatched_key:
        written_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    directory.mkdir(parents=True, exist_ok=True)
    cert_path = directory / f"{name}.crt"
    key_path = directory / f"{name}.key"
    cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        written_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


@pytest.fixture
def make_pair() -> PairFactory:
    """Return a factory writing a real certificate/key pair into a directory."""
    return _write_pair


@pytest.fixture
def ssl_config(tmp_path: Path) -> SSLConfig:
    """SSL settings rooted in the test's temporary directory."""
    return SSLConfig(path=tmp_path / "ssl", legacy_paths=(), install_acme_tool=False)
