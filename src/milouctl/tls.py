"""Certificate validation, inspection and generation helpers."""
from __future__ import annotations

import ipaddress
import logging
import os
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

LOGGER = logging.getLogger(__name__)

CERT_MODE = 0o644
KEY_MODE = 0o600

LOCALHOST_NAMES = ("localhost", "127.0.0.1", "::1")
# X.509 upper bound for the subject common name.
CN_MAX_LENGTH = 64


class CertificateError(RuntimeError):
    """Raised when certificate material cannot be read or written."""


class ExpiryStatus(str, Enum):
    """Expiry classification returned by :func:`check_expiration`."""

    EXPIRED = "expired"
    RENEW = "renew"
    INFO = "info"
    VALID = "valid"


@dataclass(frozen=True)
class CertificateBundle:
    """A certificate/key pair plus the metadata read from the certificate."""

    cert_path: Path
    key_path: Path
    domain: str | None = None
    issuer: str | None = None
    not_before: datetime | None = None
    not_after: datetime | None = None
    strategy: str = "unknown"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "cert_path": str(self.cert_path),
            "key_path": str(self.key_path),
            "domain": self.domain,
            "issuer": self.issuer,
            "not_before": self.not_before.isoformat() if self.not_before else None,
            "not_after": self.not_after.isoformat() if self.not_after else None,
            "strategy": self.strategy,
        }


@dataclass(frozen=True)
class ExpiryReport:
    """Days remaining on a certificate and the derived status."""

    status: ExpiryStatus
    days_remaining: int
    not_after: datetime | None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "days_remaining": self.days_remaining,
            "not_after": self.not_after.isoformat() if self.not_after else None,
        }


class PublicKeyProtocol(Protocol):
    """Protocol covering public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Protocol for private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


class CertificateValidator:
    """Stateless checks on a certificate/key pair."""

    def __init__(self, *, now: Callable[[], datetime] | None = None) -> None:
        """Use *now* as the clock (defaults to the current UTC time)."""
        self._now = now or (lambda: datetime.now(UTC))

    def validate(self, bundle: CertificateBundle, expected_domain: str | None = None) -> bool:
        """Return ``True`` when *bundle* is usable for *expected_domain*.

        The checks run in order: both files readable, both parse, the key
        matches the certificate, the current time falls within the validity
        window and, when *expected_domain* is given, the domain appears in the
        certificate's common name or subject alternative names. The domain
        check is plain substring containment with no wildcard handling. Any
        failing check is logged at debug level and yields ``False``; this
        method never raises.
        """
        try:
            return self._validate(bundle, expected_domain)
        except Exception as exc:  # noqa: BLE001 - validation must never raise
            LOGGER.debug("Validation of %s aborted: %s", bundle.cert_path, exc)
            return False

    def load(
        self,
        cert_path: Path,
        key_path: Path,
        *,
        domain: str | None = None,
        strategy: str = "unknown",
    ) -> CertificateBundle:
        """Return a bundle for the pair, filling issuer and validity when parseable."""
        bundle = CertificateBundle(
            cert_path=cert_path, key_path=key_path, domain=domain, strategy=strategy
        )
        try:
            certificate = _load_certificate(cert_path)
        except (OSError, ValueError) as exc:
            LOGGER.debug("Cannot read certificate %s: %s", cert_path, exc)
            return bundle
        not_before, not_after = _validity_window(certificate)
        return replace(
            bundle,
            issuer=certificate.issuer.rfc4514_string(),
            not_before=not_before,
            not_after=not_after,
        )

    def _validate(self, bundle: CertificateBundle, expected_domain: str | None) -> bool:
        for path, label in ((bundle.cert_path, "certificate"), (bundle.key_path, "key")):
            if not path.is_file():
                LOGGER.debug("%s %s does not exist", label.capitalize(), path)
                return False
            if not os.access(path, os.R_OK):
                LOGGER.debug("%s %s is not readable", label.capitalize(), path)
                return False

        try:
            certificate = _load_certificate(bundle.cert_path)
        except ValueError as exc:
            LOGGER.debug("Certificate %s failed to parse: %s", bundle.cert_path, exc)
            return False
        try:
            private_key = _load_private_key(bundle.key_path)
        except (ValueError, TypeError) as exc:
            LOGGER.debug("Private key %s failed to parse: %s", bundle.key_path, exc)
            return False

        if not _public_keys_match(certificate, private_key):
            LOGGER.debug("Certificate %s does not match key %s", bundle.cert_path, bundle.key_path)
            return False

        not_before, not_after = _validity_window(certificate)
        now = self._now()
        if now < not_before:
            LOGGER.debug("Certificate %s is not valid before %s", bundle.cert_path, not_before)
            return False
        if now >= not_after:
            LOGGER.debug("Certificate %s expired on %s", bundle.cert_path, not_after)
            return False

        if expected_domain:
            names = certificate_names(certificate)
            expected = {expected_domain, _alabel_or_none(expected_domain) or expected_domain}
            if not any(domain in name for domain in expected for name in names):
                LOGGER.debug(
                    "Domain %s not present in certificate names %s", expected_domain, names
                )
                return False

        LOGGER.debug("Certificate %s is valid until %s", bundle.cert_path, not_after)
        return True


def check_expiration(
    bundle: CertificateBundle,
    *,
    now: datetime | None = None,
) -> ExpiryReport:
    """Classify how close *bundle* is to expiry.

    ``days_remaining <= 0`` is expired, ``<= 7`` recommends renewal and
    ``<= 30`` is informational. Unreadable certificates report as expired.
    """
    now = now or datetime.now(UTC)
    not_after = bundle.not_after
    if not_after is None:
        try:
            _, not_after = _validity_window(_load_certificate(bundle.cert_path))
        except (OSError, ValueError) as exc:
            LOGGER.debug("Cannot determine expiry for %s: %s", bundle.cert_path, exc)
            return ExpiryReport(status=ExpiryStatus.EXPIRED, days_remaining=0, not_after=None)
    days_remaining = (not_after - now).days
    if days_remaining <= 0:
        status = ExpiryStatus.EXPIRED
    elif days_remaining <= 7:
        status = ExpiryStatus.RENEW
    elif days_remaining <= 30:
        status = ExpiryStatus.INFO
    else:
        status = ExpiryStatus.VALID
    return ExpiryReport(status=status, days_remaining=days_remaining, not_after=not_after)


def describe_certificate(path: Path) -> dict[str, object]:
    """Return subject, issuer, names and validity of the certificate at *path*."""
    try:
        certificate = _load_certificate(path)
    except (OSError, ValueError) as exc:
        raise CertificateError(f"Cannot read certificate {path}: {exc}") from exc
    not_before, not_after = _validity_window(certificate)
    subject = certificate.subject.rfc4514_string()
    issuer = certificate.issuer.rfc4514_string()
    return {
        "path": str(path),
        "subject": subject,
        "issuer": issuer,
        "self_signed": subject == issuer,
        "names": certificate_names(certificate),
        "serial": format(certificate.serial_number, "x"),
        "not_before": not_before.isoformat(),
        "not_after": not_after.isoformat(),
    }


def certificate_names(certificate: x509.Certificate) -> list[str]:
    """Return the common name(s) followed by every DNS/IP subject alternative name."""
    names = [
        str(attribute.value)
        for attribute in certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    ]
    try:
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return names
    names.extend(str(name) for name in san.get_values_for_type(x509.DNSName))
    names.extend(str(address) for address in san.get_values_for_type(x509.IPAddress))
    return names


def is_loopback_domain(domain: str) -> bool:
    """Return ``True`` for localhost, its subdomains and loopback addresses."""
    candidate = domain.strip().lower()
    if candidate in LOCALHOST_NAMES or candidate.endswith(".localhost"):
        return True
    try:
        return ipaddress.ip_address(candidate).is_loopback
    except ValueError:
        return False


def is_local_domain(domain: str) -> bool:
    """Return ``True`` for loopback names and private address ranges."""
    if is_loopback_domain(domain):
        return True
    try:
        return ipaddress.ip_address(domain.strip()).is_private
    except ValueError:
        return False


def localhost_names(domain: str = "localhost") -> tuple[list[str], list[str]]:
    """Return the DNS and IP names used for localhost certificates."""
    dns_names = ["localhost", "*.localhost"]
    ip_names = ["127.0.0.1", "::1"]
    try:
        ipaddress.ip_address(domain)
    except ValueError:
        if domain not in dns_names:
            dns_names.insert(0, domain)
    return dns_names, ip_names


def domain_names(domain: str) -> tuple[list[str], list[str]]:
    """Return the DNS and IP names for a certificate scoped to *domain*."""
    try:
        ipaddress.ip_address(domain)
    except ValueError:
        dns_names = [domain, "localhost"]
        if not is_local_domain(domain):
            dns_names.append(f"*.{domain}")
        return dns_names, ["127.0.0.1"]
    ip_names = [domain] if domain != "127.0.0.1" else []
    return ["localhost"], [*ip_names, "127.0.0.1"]


def generate_self_signed(
    cert_path: Path,
    key_path: Path,
    *,
    common_name: str,
    dns_names: Sequence[str] = (),
    ip_addresses: Sequence[str] = (),
    days: int = 365,
    key_size: int = 2048,
    subject_fields: Iterable[tuple[x509.ObjectIdentifier, str]] | None = None,
) -> None:
    """Write a fresh RSA key and a self-signed certificate to the given paths."""
    try:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    except ValueError as exc:
        raise CertificateError(f"Cannot generate a {key_size}-bit key: {exc}") from exc

    fields = list(subject_fields) if subject_fields is not None else [
        (NameOID.COUNTRY_NAME, "US"),
        (NameOID.STATE_OR_PROVINCE_NAME, "State"),
        (NameOID.LOCALITY_NAME, "City"),
        (NameOID.ORGANIZATION_NAME, "Milou"),
        (NameOID.ORGANIZATIONAL_UNIT_NAME, "IT Department"),
    ]
    try:
        certificate = _build_certificate(
            private_key,
            fields=fields,
            common_name=common_name,
            dns_names=dns_names,
            ip_addresses=ip_addresses,
            days=days,
        )
    except ValueError as exc:
        raise CertificateError(f"Cannot build a certificate for {common_name}: {exc}") from exc

    key_bytes = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_bytes = certificate.public_bytes(serialization.Encoding.PEM)
    try:
        cert_path.parent.mkdir(parents=True, exist_ok=True)
        write_private_key(key_path, key_bytes)
        cert_path.write_bytes(cert_bytes)
    except OSError as exc:
        raise CertificateError(f"Cannot write certificate material: {exc}") from exc
    secure_permissions(cert_path, key_path)


def write_private_key(path: Path, data: bytes) -> None:
    """Write *data* to *path*, creating the file with 0600 from the start."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, KEY_MODE)
    with os.fdopen(fd, "wb") as handle:
        os.fchmod(handle.fileno(), KEY_MODE)
        handle.write(data)


def to_alabel(name: str) -> str:
    """Return *name* in IDNA A-label form, keeping a leading wildcard label."""
    prefix = ""
    if name.startswith("*."):
        prefix, name = "*.", name[2:]
    try:
        return prefix + name.encode("idna").decode("ascii")
    except UnicodeError as exc:
        raise CertificateError(f"{name!r} is not a valid host name: {exc}") from exc


def _alabel_or_none(name: str) -> str | None:
    try:
        return to_alabel(name)
    except CertificateError:
        return None


def _build_certificate(
    private_key: rsa.RSAPrivateKey,
    *,
    fields: Sequence[tuple[x509.ObjectIdentifier, str]],
    common_name: str,
    dns_names: Sequence[str],
    ip_addresses: Sequence[str],
    days: int,
) -> x509.Certificate:
    # Long names survive only in the SAN; the CN is capped at the X.509 bound.
    subject = x509.Name(
        [x509.NameAttribute(oid, value) for oid, value in fields]
        + [x509.NameAttribute(NameOID.COMMON_NAME, common_name[:CN_MAX_LENGTH])]
    )
    now = datetime.now(UTC)
    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(private_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=1))
        .not_valid_after(now + timedelta(days=days))
    )
    alt_names: list[x509.GeneralName] = [
        x509.DNSName(to_alabel(name)) for name in dict.fromkeys(dns_names)
    ]
    alt_names.extend(x509.IPAddress(ipaddress.ip_address(value)) for value in ip_addresses)
    if alt_names:
        builder = (
            builder.add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=True,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=False,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False
            )
        )
    return builder.sign(private_key, hashes.SHA256())


def secure_permissions(cert_path: Path, key_path: Path) -> None:
    """Apply 0644 to the certificate and 0600 to the private key."""
    try:
        os.chmod(cert_path, CERT_MODE)
        os.chmod(key_path, KEY_MODE)
    except OSError as exc:
        raise CertificateError(f"Cannot set permissions on {key_path}: {exc}") from exc


def rename_aside(path: Path, *, timestamp: int | None = None) -> Path | None:
    """Rename *path* to ``<path>.invalid.<unixtime>``; return the new path."""
    if not path.exists():
        return None
    stamp = int(time.time()) if timestamp is None else timestamp
    target = path.with_name(f"{path.name}.invalid.{stamp}")
    try:
        path.rename(target)
    except OSError as exc:
        raise CertificateError(f"Cannot move {path} aside: {exc}") from exc
    LOGGER.info("Moved %s aside to %s", path, target)
    return target


def _validity_window(certificate: x509.Certificate) -> tuple[datetime, datetime]:
    not_before_attr = getattr(certificate, "not_valid_before_utc", None)
    not_after_attr = getattr(certificate, "not_valid_after_utc", None)
    if isinstance(not_before_attr, datetime) and isinstance(not_after_attr, datetime):
        return not_before_attr, not_after_attr
    return (  # pragma: no cover - older cryptography releases
        _as_utc(certificate.not_valid_before),
        _as_utc(certificate.not_valid_after),
    )


def _load_certificate(path: Path) -> x509.Certificate:
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def _load_private_key(path: Path) -> PrivateKeyProtocol:
    data = path.read_bytes()
    private_key = serialization.load_pem_private_key(data, password=None)
    return cast(PrivateKeyProtocol, private_key)


def _public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    try:
        key_public = private_key.public_key()
    except AttributeError:  # pragma: no cover - unusual key types
        return False
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_bytes = cert.public_key().public_bytes(encoding=serialization.Encoding.DER, format=spki)
    key_bytes = key_public.public_bytes(encoding=serialization.Encoding.DER, format=spki)
    return cert_bytes == key_bytes


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC)


__all__ = [
    "CERT_MODE",
    "KEY_MODE",
    "CertificateBundle",
    "CertificateError",
    "CertificateValidator",
    "ExpiryReport",
    "ExpiryStatus",
    "certificate_names",
    "check_expiration",
    "describe_certificate",
    "domain_names",
    "generate_self_signed",
    "is_local_domain",
    "is_loopback_domain",
    "localhost_names",
    "rename_aside",
    "secure_permissions",
    "to_alabel",
    "write_private_key",
]
