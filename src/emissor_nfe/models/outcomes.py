from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Any

from emissor_nfe.models.invoice import HOMOLOGACAO
from emissor_nfe.services.exceptions import (
    CertificateError,
    CertificateErrorKind,
    NFeError,
    NFeValidationError,
    RemoteRejection,
    RemoteTimeout,
    SefazResponseError,
    SigningError,
    TransportError,
)

if TYPE_CHECKING:
    from emissor_nfe.utils.certificate import SigningIdentity


class _Outcome:
    kind = "outcome"
    http_status = 200

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"outcome": self.kind, "http_status": self.http_status}
        for key, value in asdict(self).items():
            if isinstance(value, bytes):
                value = value.decode("utf-8")
            data[key] = value
        return data

    def raise_for_status(self) -> None:
        """Raise the classified error of an unsuccessful outcome; no-op otherwise."""


@dataclass(frozen=True)
class Authorized(_Outcome):
    access_key: str
    protocol_number: str
    authorized_at: str
    signed_xml: bytes  # nfeProc: signed NFe + protNFe
    status_code: int = 100
    reason: str = "Autorizado o uso da NF-e"

    kind = "authorized"


@dataclass(frozen=True)
class Rejected(_Outcome):
    status_code: int
    reason: str
    access_key: str | None = None

    kind = "rejected"
    http_status = 400

    def raise_for_status(self) -> None:
        raise RemoteRejection(self.status_code, self.reason)


@dataclass(frozen=True)
class TimedOut(_Outcome):
    """No terminal answer yet; re-query by access key instead of resubmitting."""

    last_status_code: int | None
    reason: str
    access_key: str | None = None
    receipt: str | None = None
    attempts: int = 0

    kind = "timed_out"
    http_status = 202

    def raise_for_status(self) -> None:
        raise RemoteTimeout(self.reason, self.last_status_code)


_FAILED_STATUS = {
    "validation": 400,
    "certificate": 400,
    "signing": 500,
    "transport": 503,
    "response": 502,
}

_FAILED_ERRORS: dict[str, type[NFeError]] = {
    "validation": NFeValidationError,
    "signing": SigningError,
    "transport": TransportError,
    "response": SefazResponseError,
}


@dataclass(frozen=True)
class Failed(_Outcome):
    """A local or transport stage failed before SEFAZ gave a verdict."""

    stage: str
    error_kind: str
    message: str

    kind = "failed"

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return _FAILED_STATUS.get(self.stage, 500)

    def raise_for_status(self) -> None:
        if self.stage == "certificate":
            raise CertificateError(self.message, CertificateErrorKind(self.error_kind))
        raise _FAILED_ERRORS.get(self.stage, NFeError)(self.message)


@dataclass(frozen=True)
class Cancelled(_Outcome):
    access_key: str
    protocol_number: str
    registered_at: str
    status_code: int
    reason: str
    event_xml: bytes = b""

    kind = "cancelled"


@dataclass(frozen=True)
class CorrectionRegistered(_Outcome):
    access_key: str
    protocol_number: str
    registered_at: str
    sequence: int
    status_code: int
    reason: str
    event_xml: bytes = b""

    kind = "correction_registered"


@dataclass(frozen=True)
class ServiceStatus(_Outcome):
    online: bool
    status_code: int
    reason: str
    uf: str
    checked_at: str | None = None
    average_time: int | None = None  # tMed, seconds

    kind = "service_status"

    @property
    def http_status(self) -> int:  # type: ignore[override]
        return 200 if self.online else 503


# --- Requests ---


@dataclass(frozen=True)
class CertificateData:
    """Raw PKCS#12 bytes and password, loaded on demand."""

    pkcs12_data: bytes
    password: str

    def __repr__(self) -> str:
        return f"CertificateData(<{len(self.pkcs12_data)} bytes>)"


@dataclass(frozen=True)
class CancellationRequest:
    access_key: str
    protocol_number: str
    justification: str
    certificate: SigningIdentity | CertificateData
    environment: str = HOMOLOGACAO
    sequence: int = 1


@dataclass(frozen=True)
class CorrectionRequest:
    access_key: str
    correction: str
    sequence: int
    certificate: SigningIdentity | CertificateData
    environment: str = HOMOLOGACAO
