"""Self-signed TLS material for the broker's TLS listener."""

from __future__ import annotations

import asyncio
import datetime
import ipaddress
import logging
from pathlib import Path
from typing import Any

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from ..config.const import (
    CA_COMMON_NAME,
    CA_VALIDITY_YEARS,
    CERT_COUNTRY,
    CERT_KEY_SIZE,
    CERT_ORGANIZATION,
    PRIVATE_FILE_MODE,
    PUBLIC_FILE_MODE,
    SERVER_VALIDITY_YEARS,
)
from ..config.model import DataLayout, ManagerConfig
from ..util import write_file_atomic_sync

logger = logging.getLogger("mosqctl.certificates")

_WILDCARD_HOSTS = frozenset({"", "0.0.0.0", "::", "localhost", "127.0.0.1"})


def generate_rsa_key(bits: int = CERT_KEY_SIZE) -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=bits)


def _private_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _name(common_name: str) -> x509.Name:
    return x509.Name(
        [
            x509.NameAttribute(NameOID.COUNTRY_NAME, CERT_COUNTRY),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, CERT_ORGANIZATION),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _years(now: datetime.datetime, years: int) -> datetime.datetime:
    return now + datetime.timedelta(days=365 * years)


def subject_alt_names(bind_host: str | None) -> list[x509.GeneralName]:
    """SAN entries for the server certificate.

    Always ``localhost`` and ``127.0.0.1``; the bind address is added when it
    names a specific host rather than a wildcard.
    """
    names: list[x509.GeneralName] = [
        x509.DNSName("localhost"),
        x509.IPAddress(ipaddress.ip_address("127.0.0.1")),
    ]
    host = (bind_host or "").strip()
    if host in _WILDCARD_HOSTS:
        return names
    try:
        names.append(x509.IPAddress(ipaddress.ip_address(host)))
    except ValueError:
        names.append(x509.DNSName(host))
    return names


def build_ca_certificate(key: rsa.RSAPrivateKey, now: datetime.datetime) -> x509.Certificate:
    name = _name(CA_COMMON_NAME)
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(_years(now, CA_VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )


def build_server_certificate(
    key: rsa.RSAPrivateKey,
    ca_key: rsa.RSAPrivateKey,
    ca_cert: x509.Certificate,
    now: datetime.datetime,
    bind_host: str | None,
) -> x509.Certificate:
    return (
        x509.CertificateBuilder()
        .subject_name(_name("localhost"))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(_years(now, SERVER_VALIDITY_YEARS))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectAlternativeName(subject_alt_names(bind_host)), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )
        .sign(ca_key, hashes.SHA256())
    )


def _load_certificate(path: Path) -> x509.Certificate:
    return x509.load_pem_x509_certificate(path.read_bytes())


def _public_key_der(public_key: Any) -> bytes:
    return public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _is_current(cert: x509.Certificate, now: datetime.datetime) -> bool:
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


class CertificateIssuer:
    """Issues and checks the CA / server certificate pair under ``certs/``."""

    def __init__(self, config: ManagerConfig, layout: DataLayout) -> None:
        self.config = config
        self.layout = layout

    async def ensure_certificates(self) -> bool:
        """Make sure a usable bundle exists; return True when one was generated."""
        if await asyncio.to_thread(self._bundle_is_current):
            logger.debug("Existing certificates under %s are valid.", self.layout.certs_dir)
            generated = False
        else:
            logger.info("Generating TLS certificates in %s", self.layout.certs_dir)
            await asyncio.to_thread(self._generate_bundle)
            generated = True

        self.config.tls_ca_path = str(self.layout.ca_cert)
        self.config.tls_cert_path = str(self.layout.server_cert)
        self.config.tls_key_path = str(self.layout.server_key)
        return generated

    def _bundle_is_current(self) -> bool:
        paths = (self.layout.ca_key, self.layout.ca_cert, self.layout.server_key, self.layout.server_cert)
        if not all(path.exists() for path in paths):
            return False
        now = datetime.datetime.now(datetime.timezone.utc)
        try:
            return _is_current(_load_certificate(self.layout.ca_cert), now) and _is_current(
                _load_certificate(self.layout.server_cert), now
            )
        except (OSError, ValueError) as exc:
            logger.warning("Existing certificates unreadable, regenerating: %s", exc)
            return False

    def _generate_bundle(self) -> None:
        now = datetime.datetime.now(datetime.timezone.utc)
        ca_key = generate_rsa_key()
        ca_cert = build_ca_certificate(ca_key, now)
        server_key = generate_rsa_key()
        server_cert = build_server_certificate(server_key, ca_key, ca_cert, now, self.config.broker_host)

        write_file_atomic_sync(self.layout.ca_key, _private_pem(ca_key), mode=PRIVATE_FILE_MODE)
        write_file_atomic_sync(
            self.layout.ca_cert,
            ca_cert.public_bytes(serialization.Encoding.PEM),
            mode=PUBLIC_FILE_MODE,
        )
        write_file_atomic_sync(self.layout.server_key, _private_pem(server_key), mode=PRIVATE_FILE_MODE)
        write_file_atomic_sync(
            self.layout.server_cert,
            server_cert.public_bytes(serialization.Encoding.PEM),
            mode=PUBLIC_FILE_MODE,
        )
        logger.info("TLS certificates generated successfully.")

    def validate_certificates(self) -> bool:
        """Return True when the configured certificate and key are usable now."""
        cert_path = self.config.tls_cert_path
        key_path = self.config.tls_key_path
        if not cert_path or not key_path:
            logger.warning("TLS certificate or key path not configured.")
            return False
        try:
            cert = _load_certificate(Path(cert_path))
            key = serialization.load_pem_private_key(Path(key_path).read_bytes(), password=None)
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("Certificate validation failed: %s", exc)
            return False

        now = datetime.datetime.now(datetime.timezone.utc)
        if not _is_current(cert, now):
            logger.warning(
                "Certificate %s outside validity window (%s .. %s)",
                cert_path,
                cert.not_valid_before_utc.isoformat(),
                cert.not_valid_after_utc.isoformat(),
            )
            return False
        if _public_key_der(cert.public_key()) != _public_key_der(key.public_key()):
            logger.warning("Certificate %s does not match key %s", cert_path, key_path)
            return False
        return True

    def describe_certificates(self) -> dict[str, Any] | None:
        """Subject, issuer, validity window and SANs of the configured certificate."""
        cert_path = self.config.tls_cert_path
        if not cert_path:
            return None
        try:
            cert = _load_certificate(Path(cert_path))
        except (OSError, ValueError) as exc:
            logger.warning("Unable to read certificate %s: %s", cert_path, exc)
            return None

        try:
            san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
            alt_names = [str(value) for value in san.get_values_for_type(x509.DNSName)]
            alt_names += [str(value) for value in san.get_values_for_type(x509.IPAddress)]
        except x509.ExtensionNotFound:
            alt_names = []

        return {
            "path": cert_path,
            "subject": cert.subject.rfc4514_string(),
            "issuer": cert.issuer.rfc4514_string(),
            "not_before": cert.not_valid_before_utc.isoformat(),
            "not_after": cert.not_valid_after_utc.isoformat(),
            "subject_alt_names": alt_names,
            "valid": self.validate_certificates(),
        }


__all__ = [
    "CertificateIssuer",
    "build_ca_certificate",
    "build_server_certificate",
    "generate_rsa_key",
    "subject_alt_names",
]
