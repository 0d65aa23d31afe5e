"""Tax-code selection per fiscal regime (ICMS, PIS, COFINS and IPI)."""

from __future__ import annotations

from decimal import Decimal

from emissor_nfe.models.emitter import FiscalRegime
from emissor_nfe.models.invoice import InvoiceDraft, LineItem
from emissor_nfe.models.taxes import IcmsInput, IcmsTax, TaxComputation, TaxInput, TaxRecord
from emissor_nfe.services.exceptions import InvalidTaxInput, NFeValidationError
from emissor_nfe.utils.formatters import CENT, money
from emissor_nfe.utils.uf import FOREIGN_UF
from emissor_nfe.utils.validators import validate_cst_pis_cofins

ZERO = Decimal("0")

CSOSN_CODES = frozenset({"101", "102", "103", "201", "202", "203", "300", "400", "500", "900"})
DEFAULT_CSOSN = "102"

CST_ICMS_CODES = frozenset({"00", "10", "20", "30", "40", "41", "50", "51", "60", "70", "90"})
CST_ICMS_WITH_BASE = frozenset({"00", "10", "20", "51", "70", "90"})
CST_ICMS_REDUCED_BASE = frozenset({"20", "70"})
DEFAULT_CST_ICMS = "90"
DEFAULT_MOD_BC = "3"  # valor da operação

DEFAULT_CST_PIS_COFINS = "99"

CST_IPI_CODES = frozenset(
    {"00", "01", "02", "03", "04", "05", "49", "50", "51", "52", "53", "54", "55", "99"}
)
CST_IPI_TAXED = frozenset({"00", "49", "50", "99"})
DEFAULT_IPI_ENQUADRAMENTO = "999"

# Alíquota interna de ICMS (regra geral) por UF
INTERNAL_ICMS_RATES = {
    uf: Decimal(rate)
    for uf, rate in {
        "AC": "17", "AL": "18", "AP": "18", "AM": "18", "BA": "18", "CE": "18", "DF": "18",
        "ES": "17", "GO": "17", "MA": "18", "MT": "17", "MS": "17", "MG": "18", "PA": "17",
        "PB": "18", "PR": "18", "PE": "18", "PI": "18", "RJ": "18", "RN": "18", "RS": "18",
        "RO": "17.5", "RR": "17", "SC": "17", "SP": "18", "SE": "18", "TO": "18",
    }.items()
}
DEFAULT_INTERNAL_RATE = Decimal("18")

# Sul e Sudeste exceto ES: saídas para as demais UFs usam 7%, o resto 12%
SOUTH_SOUTHEAST = frozenset({"MG", "PR", "RJ", "RS", "SC", "SP"})
INTERSTATE_RATE = Decimal("12")
INTERSTATE_RATE_TO_NORTH = Decimal("7")
# Resolução do Senado 13/2012: mercadoria importada (origem 1, 2, 3 ou 8)
IMPORTED_ORIGINS = frozenset({1, 2, 3, 8})
IMPORTED_INTERSTATE_RATE = Decimal("4")


def _nonzero(*values: Decimal | None) -> bool:
    return any(v is not None and v != 0 for v in values)


def _checked_value(base: Decimal, rate: Decimal, value: Decimal | None, name: str) -> Decimal:
    """Return round(base*rate/100, 2), or the caller value when it agrees within 0.01."""
    expected = money(base * rate / 100)
    if value is None:
        return expected
    if abs(value - expected) > CENT:
        raise InvalidTaxInput(
            f"{name}: valor {value} inconsistente com base {base} x alíquota {rate}% ({expected})"
        )
    return money(value)


def _base_for(base: Decimal | None, rate: Decimal | None, item_total: Decimal) -> Decimal:
    # A rate without a base is applied over the item total; no rate means no base.
    if base is not None:
        return money(base)
    if rate is not None:
        return item_total
    return ZERO


def icms_rate(emitter_uf: str, recipient_uf: str, origin: int = 0) -> Decimal | None:
    """Table ICMS rate for a sale from *emitter_uf* to *recipient_uf*; None for exports."""
    emitter_uf, recipient_uf = emitter_uf.upper(), recipient_uf.upper()
    if recipient_uf == FOREIGN_UF:
        return None
    if emitter_uf == recipient_uf:
        return INTERNAL_ICMS_RATES.get(emitter_uf, DEFAULT_INTERNAL_RATE)
    if origin in IMPORTED_ORIGINS:
        return IMPORTED_INTERSTATE_RATE
    if emitter_uf in SOUTH_SOUTHEAST and recipient_uf not in SOUTH_SOUTHEAST:
        return INTERSTATE_RATE_TO_NORTH
    return INTERSTATE_RATE


def _resolve_csosn(icms: IcmsInput | None, origin: int) -> IcmsTax:
    code = icms.code if icms and icms.code else DEFAULT_CSOSN
    if code not in CSOSN_CODES:
        raise InvalidTaxInput(f"CSOSN inválido para o Simples Nacional: '{code}'")
    if icms and _nonzero(icms.base, icms.rate, icms.value):
        raise InvalidTaxInput(
            f"CSOSN {code}: base/alíquota/valor de ICMS não se aplicam ao Simples Nacional"
        )
    return IcmsTax(code=code, origin=origin, is_csosn=True)


def _resolve_cst(
    icms: IcmsInput | None, origin: int, item_total: Decimal, table_rate: Decimal | None = None
) -> IcmsTax:
    if icms is None or (icms.code is None and not _nonzero(icms.base, icms.rate, icms.value)):
        if table_rate is not None:
            return IcmsTax(
                code="00", origin=origin, is_csosn=False, modality=DEFAULT_MOD_BC,
                base=item_total, rate=table_rate, value=money(item_total * table_rate / 100),
            )
        return IcmsTax(
            code=DEFAULT_CST_ICMS, origin=origin, is_csosn=False, modality=DEFAULT_MOD_BC,
            base=ZERO, rate=ZERO, value=ZERO,
        )

    if icms.code is not None:
        code = icms.code.zfill(2)
    else:
        code = "00" if _nonzero(icms.rate) else DEFAULT_CST_ICMS
    if code not in CST_ICMS_CODES:
        raise InvalidTaxInput(f"CST de ICMS inválido: '{icms.code}'")

    if code not in CST_ICMS_WITH_BASE:
        if _nonzero(icms.rate, icms.value):
            raise InvalidTaxInput(f"CST {code} não admite alíquota ou valor de ICMS próprio")
        return IcmsTax(code=code, origin=origin, is_csosn=False)

    reduction = icms.reduction if code in CST_ICMS_REDUCED_BASE else None
    if reduction is not None and not ZERO <= reduction < 100:
        raise InvalidTaxInput(f"CST {code}: percentual de redução inválido ({reduction})")

    rate = icms.rate if icms.rate is not None else ZERO
    base = icms.base
    if base is None and icms.rate is not None:
        base = item_total
        if reduction:
            base = money(base * (100 - reduction) / 100)
    base = money(base) if base is not None else ZERO
    value = _checked_value(base, rate, icms.value, f"ICMS CST {code}")
    return IcmsTax(
        code=code,
        origin=origin,
        is_csosn=False,
        modality=icms.modality or DEFAULT_MOD_BC,
        base=base,
        rate=rate,
        value=value,
        reduction=reduction,
    )


def _resolve_contribution(tax: TaxInput | None, item_total: Decimal, name: str) -> TaxRecord:
    if tax is None:
        return TaxRecord(code=DEFAULT_CST_PIS_COFINS, base=ZERO, rate=ZERO, value=ZERO)
    code = tax.cst or DEFAULT_CST_PIS_COFINS
    try:
        validate_cst_pis_cofins(code)
    except NFeValidationError as exc:
        raise InvalidTaxInput(f"{name}: {exc}") from None
    base = _base_for(tax.base, tax.rate, item_total)
    rate = tax.rate if tax.rate is not None else ZERO
    return TaxRecord(
        code=code, base=base, rate=rate, value=_checked_value(base, rate, tax.value, name)
    )


def _resolve_ipi(tax: TaxInput | None, item_total: Decimal) -> TaxRecord | None:
    if tax is None:
        return None
    code = tax.cst or "99"
    if code not in CST_IPI_CODES:
        raise InvalidTaxInput(f"CST de IPI inválido: '{code}'")
    enquadramento = tax.enquadramento or DEFAULT_IPI_ENQUADRAMENTO
    if code not in CST_IPI_TAXED:
        if _nonzero(tax.rate, tax.value):
            raise InvalidTaxInput(f"CST de IPI {code} não admite alíquota ou valor")
        return TaxRecord(code=code, base=ZERO, rate=ZERO, value=ZERO, enquadramento=enquadramento)
    base = _base_for(tax.base, tax.rate, item_total)
    rate = tax.rate if tax.rate is not None else ZERO
    return TaxRecord(
        code=code,
        base=base,
        rate=rate,
        value=_checked_value(base, rate, tax.value, "IPI"),
        enquadramento=enquadramento,
    )


def resolve_taxes(
    item: LineItem,
    regime: FiscalRegime,
    *,
    emitter_uf: str | None = None,
    recipient_uf: str | None = None,
) -> TaxComputation:
    """Select tax codes and compute base/rate/value for one line item.

    Pure function: the same item, regime and route always resolve to the
    same computation. Under the normal regimes an item without ICMS data
    goes out as CST 00 at the table rate for the emitter -> recipient UF
    pair; with no route (or for an export) it stays CST 90 with zeros.
    Raises InvalidTaxInput for codes outside the enumerated sets or
    inconsistent base/rate/value triples.
    """
    total = item.total_value
    taxes = item.impostos
    if regime is FiscalRegime.SIMPLES_NACIONAL:
        icms = _resolve_csosn(taxes.icms, item.origem)
    else:
        rate = None
        if emitter_uf and recipient_uf:
            rate = icms_rate(emitter_uf, recipient_uf, item.origem)
        icms = _resolve_cst(taxes.icms, item.origem, total, rate)
    return TaxComputation(
        icms=icms,
        pis=_resolve_contribution(taxes.pis, total, "PIS"),
        cofins=_resolve_contribution(taxes.cofins, total, "COFINS"),
        ipi=_resolve_ipi(taxes.ipi, total),
    )


def resolve_draft_taxes(draft: InvoiceDraft) -> list[TaxComputation]:
    """resolve_taxes for every item of *draft*, routed emitter UF -> recipient UF."""
    recipient_uf = FOREIGN_UF if draft.recipient.is_foreign else draft.recipient.endereco.uf
    return [
        resolve_taxes(item, draft.emitter.regime, emitter_uf=draft.emitter.uf, recipient_uf=recipient_uf)
        for item in draft.itens
    ]
