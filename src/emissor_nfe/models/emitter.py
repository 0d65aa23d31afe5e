from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum


class FiscalRegime(IntEnum):
    SIMPLES_NACIONAL = 1
    LUCRO_PRESUMIDO = 2
    LUCRO_REAL = 3

    @property
    def crt(self) -> str:
        """Código de Regime Tributário as written in emit/CRT."""
        return "1" if self is FiscalRegime.SIMPLES_NACIONAL else "3"

    @classmethod
    def parse(cls, value: object) -> FiscalRegime:
        if isinstance(value, FiscalRegime):
            return value
        text = str(value).strip().lower().replace(" ", "_")
        aliases = {
            "simples": cls.SIMPLES_NACIONAL,
            "simples_nacional": cls.SIMPLES_NACIONAL,
            "lucro_presumido": cls.LUCRO_PRESUMIDO,
            "presumido": cls.LUCRO_PRESUMIDO,
            "lucro_real": cls.LUCRO_REAL,
            "real": cls.LUCRO_REAL,
        }
        if text in aliases:
            return aliases[text]
        return cls(int(text))


@dataclass(frozen=True)
class Address:
    logradouro: str
    numero: str
    bairro: str
    cod_municipio: str  # IBGE, 7 digits
    municipio: str
    uf: str
    cep: str
    complemento: str | None = None
    fone: str | None = None
    cod_pais: str = "1058"
    pais: str = "BRASIL"

    @classmethod
    def from_dict(cls, d: dict) -> Address:
        return cls(
            logradouro=d.get("logradouro", ""),
            numero=str(d.get("numero", "S/N")),
            bairro=d.get("bairro", ""),
            cod_municipio=str(d.get("cod_municipio", "")),
            municipio=d.get("municipio", ""),
            uf=str(d.get("uf", "")).upper(),
            cep=str(d.get("cep", "")),
            complemento=d.get("complemento"),
            fone=str(d["fone"]) if d.get("fone") else None,
            cod_pais=str(d.get("cod_pais", "1058")),
            pais=d.get("pais", "BRASIL"),
        )


@dataclass(frozen=True)
class Emitter:
    """Emitter (emitente), the company issuing the NF-e."""

    cnpj: str
    razao_social: str
    ie: str
    regime: FiscalRegime
    endereco: Address
    nome_fantasia: str | None = None
    im: str | None = None
    email: str | None = None
    ver_aplic: str = "emissor-nfe_0.1.0"

    @property
    def uf(self) -> str:
        return self.endereco.uf

    @classmethod
    def from_dict(cls, d: dict) -> Emitter:
        """Create an Emitter from a YAML-loaded dict, applying defaults for optional fields."""
        return cls(
            cnpj=str(d.get("cnpj", "")),
            razao_social=d.get("razao_social", ""),
            ie=str(d.get("ie", "")),
            regime=FiscalRegime.parse(d.get("regime", 1)),
            endereco=Address.from_dict(d.get("endereco", d)),
            nome_fantasia=d.get("nome_fantasia"),
            im=str(d["im"]) if d.get("im") else None,
            email=d.get("email"),
            ver_aplic=d.get("ver_aplic", "emissor-nfe_0.1.0"),
        )
