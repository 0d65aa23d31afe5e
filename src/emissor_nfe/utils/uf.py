from __future__ import annotations

# IBGE numeric codes per UF
UF_CODES = {
    "RO": "11", "AC": "12", "AM": "13", "RR": "14", "PA": "15", "AP": "16", "TO": "17",
    "MA": "21", "PI": "22", "CE": "23", "RN": "24", "PB": "25", "PE": "26", "AL": "27",
    "SE": "28", "BA": "29",
    "MG": "31", "ES": "32", "RJ": "33", "SP": "35",
    "PR": "41", "SC": "42", "RS": "43",
    "MS": "50", "MT": "51", "GO": "52", "DF": "53",
}

_CODES_TO_UF = {code: uf for uf, code in UF_CODES.items()}

FOREIGN_UF = "EX"


def uf_code(uf: str) -> str:
    """Return the two-digit IBGE code for a UF abbreviation."""
    try:
        return UF_CODES[uf.upper()]
    except KeyError:
        raise ValueError(f"UF inválida: {uf}") from None


def uf_from_code(code: str | int) -> str:
    """Return the UF abbreviation for a two-digit IBGE code."""
    try:
        return _CODES_TO_UF[str(code).zfill(2)]
    except KeyError:
        raise ValueError(f"Código UF inválido: {code}") from None
