from __future__ import annotations

from enum import Enum


class NFeError(Exception):
    """Base class for every classified failure in the emission pipeline."""

    kind = "error"


# --- Validation (never retried, surfaced verbatim) ---


class NFeValidationError(NFeError, ValueError):
    """Malformed input caught before any network call."""

    kind = "validation"


class MissingRequiredField(NFeValidationError):
    kind = "missing_required_field"

    def __init__(self, field: str, message: str | None = None) -> None:
        super().__init__(message or f"Campo obrigatório ausente: {field}")
        self.field = field


class InvalidTotals(NFeValidationError):
    kind = "invalid_totals"


class InvalidAccessKeyInput(NFeValidationError):
    kind = "invalid_access_key_input"


class InvalidTaxInput(NFeValidationError):
    kind = "invalid_tax_input"


class InvalidCfop(NFeValidationError):
    kind = "invalid_cfop"


ValidationError = NFeValidationError


# --- Certificate / signing (fatal for the current attempt) ---


class CertificateErrorKind(str, Enum):
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    NO_PRIVATE_KEY = "no_private_key"
    BAD_PASSWORD = "bad_password"


class CertificateError(NFeError):
    kind = "certificate"

    def __init__(self, message: str, error_kind: CertificateErrorKind) -> None:
        super().__init__(message)
        self.error_kind = error_kind


class SigningError(NFeError):
    """The signature could not be produced (bad key usage, corrupted identity)."""

    kind = "signing"


SigningFailed = SigningError


# --- Remote side ---


class RemoteRejection(NFeError):
    """SEFAZ answered with a deterministic rejection status."""

    kind = "remote_rejection"

    def __init__(self, status_code: int, reason: str, response: bytes | None = None) -> None:
        super().__init__(f"cStat {status_code}: {reason}")
        self.status_code = status_code
        self.reason = reason
        self.response = response


class RemoteTimeout(NFeError):
    """No terminal answer after polling; the document may still be authorized."""

    kind = "remote_timeout"

    def __init__(self, message: str, last_status_code: int | None = None) -> None:
        super().__init__(message)
        self.last_status_code = last_status_code


class TransportError(NFeError):
    """Network or HTTP level failure talking to SEFAZ."""

    kind = "transport"

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SefazResponseError(NFeError):
    """SEFAZ returned 200 OK but the body is not a recognizable reply."""

    kind = "invalid_response"

    def __init__(self, message: str, response: bytes | None = None) -> None:
        super().__init__(message)
        self.response = response or b""
