from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation

from emissor_nfe.services.exceptions import MissingRequiredField, NFeValidationError
from emissor_nfe.utils.access_key import is_valid_access_key

_VALID_CST_PIS_COFINS = frozenset({
    "01", "02", "03", "04", "05", "06", "07", "08", "09",
    "49", "50", "51", "52", "53", "54", "55", "56",
    "60", "61", "62", "63", "64", "65", "66", "67",
    "70", "71", "72", "73", "74", "75",
    "98", "99",
})


def only_digits(value: str | None) -> str:
    """Strip punctuation from a document number (CNPJ, CPF, CEP, phone)."""
    return re.sub(r"\D", "", value or "")


def require(value: str | None, field: str) -> str:
    """Return *value* stripped, raising MissingRequiredField when blank."""
    if value is None or not str(value).strip():
        raise MissingRequiredField(field)
    return str(value).strip()


def parse_decimal(value: object, field: str, *, allow_negative: bool = False) -> Decimal:
    """Parse a numeric value into a finite Decimal."""
    try:
        d = Decimal(str(value))
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise NFeValidationError(f"{field}: valor numérico inválido '{value}'") from None
    if d < 0 and not allow_negative:
        raise NFeValidationError(f"{field}: não pode ser negativo ({value})")
    return d


def _dv(digits: str, weights: list[int]) -> str:
    total = sum(int(d) * w for d, w in zip(digits, weights, strict=True))
    remainder = total % 11
    return "0" if remainder < 2 else str(11 - remainder)


def is_valid_cnpj(value: str) -> bool:
    """Validate a 14-digit CNPJ including both check digits."""
    if not re.fullmatch(r"\d{14}", value) or len(set(value)) == 1:
        return False
    first = _dv(value[:12], [5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2])
    second = _dv(value[:12] + first, [6, 5, 4, 3, 2, 9, 8, 7, 6, 5, 4, 3, 2])
    return value[12:] == first + second


def is_valid_cpf(value: str) -> bool:
    """Validate an 11-digit CPF including both check digits."""
    if not re.fullmatch(r"\d{11}", value) or len(set(value)) == 1:
        return False
    first = _dv(value[:9], list(range(10, 1, -1)))
    second = _dv(value[:9] + first, list(range(11, 1, -1)))
    return value[9:] == first + second


def validate_document(value: str, field: str = "CPF/CNPJ") -> str:
    """Validate a CPF or CNPJ, returning only its digits."""
    digits = only_digits(value)
    if len(digits) == 11 and is_valid_cpf(digits):
        return digits
    if len(digits) == 14 and is_valid_cnpj(digits):
        return digits
    raise NFeValidationError(f"{field}: documento inválido '{value}'")


def validate_ncm(value: str) -> str:
    """Validate NCM: exactly 8 numeric digits."""
    if not re.fullmatch(r"\d{8}", value):
        raise NFeValidationError(f"NCM: deve ter 8 dígitos numéricos ('{value}')")
    return value


def validate_cfop(value: str) -> str:
    """Validate CFOP: 4 digits starting with 1-3 (entrada) or 5-7 (saída)."""
    if not re.fullmatch(r"[1235-7]\d{3}", value):
        raise NFeValidationError(f"CFOP: código inválido ('{value}')")
    return value


def validate_cest(value: str) -> str:
    """Validate CEST: exactly 7 numeric digits."""
    if not re.fullmatch(r"\d{7}", value):
        raise NFeValidationError(f"CEST: deve ter 7 dígitos numéricos ('{value}')")
    return value


def validate_city_code(value: str, field: str = "cMun") -> str:
    """Validate an IBGE city code: exactly 7 numeric digits."""
    if not re.fullmatch(r"\d{7}", value):
        raise NFeValidationError(f"{field}: código IBGE deve ter 7 dígitos ('{value}')")
    return value


def validate_cst_pis_cofins(value: str) -> str:
    """Validate CST PIS/COFINS against known valid codes."""
    if value not in _VALID_CST_PIS_COFINS:
        raise NFeValidationError(f"CST PIS/COFINS: código inválido ('{value}')")
    return value


def validate_access_key(value: str) -> str:
    """Validate an NFe access key: 44 digits with a matching mod-11 digit."""
    if not is_valid_access_key(value):
        raise NFeValidationError(
            "Chave de acesso: deve ter exatamente 44 dígitos com dígito verificador válido"
        )
    return value


def validate_protocol(value: str) -> str:
    """Validate an authorization protocol number: 15 digits."""
    if not re.fullmatch(r"\d{15}", value or ""):
        raise NFeValidationError(f"Protocolo: deve ter 15 dígitos ('{value}')")
    return value


def validate_free_text(value: str | None, field: str, minimum: int, maximum: int) -> str:
    """Validate a justification/correction text length after trimming."""
    text = " ".join((value or "").split())
    if len(text) < minimum:
        raise NFeValidationError(f"{field}: mínimo de {minimum} caracteres ({len(text)} informados)")
    if len(text) > maximum:
        raise NFeValidationError(f"{field}: máximo de {maximum} caracteres ({len(text)} informados)")
    return text


def validate_percent(value: object, field: str = "Percentual") -> Decimal:
    """Validate a percentage value (0.00-100.00)."""
    d = parse_decimal(value, field)
    if d > 100:
        raise NFeValidationError(f"{field}: deve estar entre 0.00 e 100.00")
    return d
