from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from emissor_nfe.utils.validators import parse_decimal, validate_percent


def _opt_decimal(d: dict, key: str, field: str, *, percent: bool = False) -> Decimal | None:
    value = d.get(key)
    if value is None or value == "":
        return None
    if percent:
        return validate_percent(value, field)
    return parse_decimal(value, field)


# --- Caller-supplied tax data ---


@dataclass(frozen=True)
class IcmsInput:
    code: str | None = None  # CST (2 digits) or CSOSN (3 digits)
    base: Decimal | None = None
    rate: Decimal | None = None
    value: Decimal | None = None
    reduction: Decimal | None = None  # pRedBC, CST 20/70
    modality: str | None = None  # modBC

    @classmethod
    def from_dict(cls, d: dict) -> IcmsInput:
        code = d.get("codigo", d.get("cst", d.get("csosn")))
        return cls(
            code=str(code) if code is not None else None,
            base=_opt_decimal(d, "base", "ICMS base"),
            rate=_opt_decimal(d, "aliquota", "ICMS aliquota", percent=True),
            value=_opt_decimal(d, "valor", "ICMS valor"),
            reduction=_opt_decimal(d, "reducao", "ICMS reducao", percent=True),
            modality=str(d["modalidade"]) if d.get("modalidade") is not None else None,
        )


@dataclass(frozen=True)
class TaxInput:
    """PIS, COFINS or IPI data as supplied by the caller."""

    cst: str | None = None
    base: Decimal | None = None
    rate: Decimal | None = None
    value: Decimal | None = None
    enquadramento: str | None = None  # IPI cEnq

    @classmethod
    def from_dict(cls, d: dict, name: str = "tributo") -> TaxInput:
        return cls(
            cst=str(d["cst"]).zfill(2) if d.get("cst") is not None else None,
            base=_opt_decimal(d, "base", f"{name} base"),
            # TIPI has IPI rates above 100% (tabaco)
            rate=_opt_decimal(d, "aliquota", f"{name} aliquota", percent=name != "IPI"),
            value=_opt_decimal(d, "valor", f"{name} valor"),
            enquadramento=str(d["enquadramento"]) if d.get("enquadramento") else None,
        )


@dataclass(frozen=True)
class ItemTaxes:
    icms: IcmsInput | None = None
    pis: TaxInput | None = None
    cofins: TaxInput | None = None
    ipi: TaxInput | None = None

    @classmethod
    def from_dict(cls, d: dict) -> ItemTaxes:
        return cls(
            icms=IcmsInput.from_dict(d["icms"]) if d.get("icms") else None,
            pis=TaxInput.from_dict(d["pis"], "PIS") if d.get("pis") else None,
            cofins=TaxInput.from_dict(d["cofins"], "COFINS") if d.get("cofins") else None,
            ipi=TaxInput.from_dict(d["ipi"], "IPI") if d.get("ipi") else None,
        )


# --- Resolved tax data ---


@dataclass(frozen=True)
class TaxRecord:
    code: str
    base: Decimal
    rate: Decimal
    value: Decimal
    enquadramento: str | None = None


@dataclass(frozen=True)
class IcmsTax:
    code: str
    origin: int
    is_csosn: bool
    modality: str | None = None
    base: Decimal | None = None
    rate: Decimal | None = None
    value: Decimal | None = None
    reduction: Decimal | None = None

    @property
    def has_triple(self) -> bool:
        return self.base is not None and self.rate is not None and self.value is not None


@dataclass(frozen=True)
class TaxComputation:
    icms: IcmsTax
    pis: TaxRecord
    cofins: TaxRecord
    ipi: TaxRecord | None = None
