from __future__ import annotations

import random
import re
from dataclasses import dataclass
from datetime import datetime

from emissor_nfe.services.exceptions import InvalidAccessKeyInput
from emissor_nfe.utils.uf import uf_code

ACCESS_KEY_LENGTH = 44


def mod11_check_digit(digits: str) -> str:
    """Compute the NFe mod-11 check digit over a string of digits.

    Weights 2..9 are applied from the rightmost digit and repeat.
    A remainder of 0 or 1 yields digit 0.
    """
    if not digits.isdigit():
        raise InvalidAccessKeyInput(f"Sequência não numérica: '{digits}'")
    total = 0
    weight = 2
    for ch in reversed(digits):
        total += int(ch) * weight
        weight = 2 if weight == 9 else weight + 1
    remainder = total % 11
    if remainder < 2:
        return "0"
    return str(11 - remainder)


def random_numeric_code(numero: int) -> str:
    """Draw an 8-digit cNF that differs from the zero-padded invoice number."""
    padded = str(numero).zfill(8)[-8:]
    while True:
        code = str(random.randint(10000000, 99999999))
        if code != padded:
            return code


def _digits(value: str | int, width: int, name: str) -> str:
    text = str(value)
    if not text.isdigit():
        raise InvalidAccessKeyInput(f"{name}: deve conter apenas dígitos, recebido '{text}'")
    if len(text) > width:
        raise InvalidAccessKeyInput(f"{name}: máximo de {width} dígitos, recebido '{text}'")
    return text.zfill(width)


def generate_access_key(
    uf: str,
    emitted_at: datetime,
    document: str,
    modelo: str | int,
    serie: int,
    numero: int,
    tp_emis: int = 1,
    codigo_numerico: str | None = None,
) -> str:
    """Generate the 44-digit NFe access key.

    Format: cUF(2) + AAMM(4) + CNPJ(14) + mod(2) + serie(3) + nNF(9)
    + tpEmis(1) + cNF(8) + cDV(1)
    """
    try:
        c_uf = uf_code(uf)
    except ValueError as exc:
        raise InvalidAccessKeyInput(str(exc)) from None
    if codigo_numerico is None:
        codigo_numerico = random_numeric_code(numero)
    parts = [
        c_uf,
        emitted_at.strftime("%y%m"),
        _digits(document, 14, "CNPJ"),
        _digits(modelo, 2, "modelo"),
        _digits(serie, 3, "serie"),
        _digits(numero, 9, "nNF"),
        _digits(tp_emis, 1, "tpEmis"),
        _digits(codigo_numerico, 8, "cNF"),
    ]
    prefix = "".join(parts)
    key = prefix + mod11_check_digit(prefix)
    if len(key) != ACCESS_KEY_LENGTH:
        raise InvalidAccessKeyInput(f"Chave deve ter 44 dígitos, obtido {len(key)}: {key}")
    return key


def is_valid_access_key(key: str) -> bool:
    """True when *key* has 44 digits and a matching check digit."""
    if not re.fullmatch(r"\d{44}", key):
        return False
    return mod11_check_digit(key[:43]) == key[43]


@dataclass(frozen=True)
class AccessKeyParts:
    c_uf: str
    aamm: str
    document: str
    modelo: str
    serie: str
    numero: str
    tp_emis: str
    codigo_numerico: str
    check_digit: str


def parse_access_key(key: str) -> AccessKeyParts:
    """Split a valid access key into its fields."""
    if not is_valid_access_key(key):
        raise InvalidAccessKeyInput(f"Chave de acesso inválida: '{key}'")
    return AccessKeyParts(
        c_uf=key[0:2],
        aamm=key[2:6],
        document=key[6:20],
        modelo=key[20:22],
        serie=key[22:25],
        numero=key[25:34],
        tp_emis=key[34],
        codigo_numerico=key[35:43],
        check_digit=key[43],
    )
