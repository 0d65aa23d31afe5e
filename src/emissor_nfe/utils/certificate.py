from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509 import Certificate
from cryptography.x509.oid import NameOID

from emissor_nfe.services.exceptions import CertificateError, CertificateErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningIdentity:
    """A loaded A1 certificate, usable for XML signing and mutual TLS.

    Read-only after loading, so one identity can be shared by concurrent calls.
    """

    key_pem: bytes
    cert_pem: bytes
    chain: tuple[Certificate, ...]
    subject: str
    issuer: str
    serial: int
    not_before: datetime
    not_after: datetime
    pkcs12_data: bytes = field(repr=False)
    pkcs12_password: str = field(repr=False)
    holder_document: str | None = None

    def is_valid_at(self, when: datetime) -> bool:
        return self.not_before <= when <= self.not_after


def _holder_document(certificate: Certificate) -> str | None:
    """Extract the CNPJ/CPF ICP-Brasil places after ':' in the subject CN."""
    names = certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not names:
        return None
    cn = str(names[0].value)
    match = re.search(r":(\d{11}|\d{14})$", cn)
    return match.group(1) if match else None


def load_certificate(data: bytes, password: str, *, now: datetime | None = None) -> SigningIdentity:
    """Load PKCS#12 bytes into a SigningIdentity, classifying every failure."""
    try:
        private_key, certificate, chain = pkcs12.load_key_and_certificates(
            data, password.encode() if password else None
        )
    except ValueError as exc:
        raise CertificateError(
            f"Não foi possível abrir o certificado (senha incorreta ou arquivo corrompido): {exc}",
            CertificateErrorKind.BAD_PASSWORD,
        ) from exc

    if certificate is None or private_key is None:
        raise CertificateError(
            "Certificado ou chave privada não encontrados no arquivo .pfx",
            CertificateErrorKind.NO_PRIVATE_KEY,
        )

    now = now or datetime.now(UTC)
    not_before = certificate.not_valid_before_utc
    not_after = certificate.not_valid_after_utc
    if now < not_before:
        raise CertificateError(
            f"Certificado ainda não é válido (início em {not_before.isoformat()})",
            CertificateErrorKind.NOT_YET_VALID,
        )
    if now > not_after:
        raise CertificateError(
            f"Certificado expirado em {not_after.isoformat()}",
            CertificateErrorKind.EXPIRED,
        )

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    identity = SigningIdentity(
        key_pem=key_pem,
        cert_pem=certificate.public_bytes(Encoding.PEM),
        chain=tuple(chain or ()),
        subject=certificate.subject.rfc4514_string(),
        issuer=certificate.issuer.rfc4514_string(),
        serial=certificate.serial_number,
        not_before=not_before,
        not_after=not_after,
        pkcs12_data=data,
        pkcs12_password=password,
        holder_document=_holder_document(certificate),
    )
    logger.debug("Loaded certificate %s (valid until %s)", identity.subject, not_after.isoformat())
    return identity


def load_pfx(pfx_path: str, password: str) -> SigningIdentity:
    """Read a .pfx/.p12 file from disk and load it."""
    return load_certificate(Path(pfx_path).read_bytes(), password)


def validate_certificate(pfx_path: str, password: str) -> dict:
    """Inspect a certificate without enforcing its validity window."""
    pfx_data = Path(pfx_path).read_bytes()
    try:
        _, certificate, _ = pkcs12.load_key_and_certificates(pfx_data, password.encode())
    except ValueError as exc:
        raise CertificateError(str(exc), CertificateErrorKind.BAD_PASSWORD) from exc

    if certificate is None:
        raise CertificateError("No certificate found in .pfx file", CertificateErrorKind.NO_PRIVATE_KEY)

    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
        "holder_document": _holder_document(certificate),
    }
