from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import IntEnum

from lxml import etree

from emissor_nfe.config import BRT, NFE_NS, NFE_VERSION
from emissor_nfe.models.emitter import Address, Emitter
from emissor_nfe.models.invoice import PRODUCAO, SEM_PAGAMENTO, InvoiceDraft, LineItem
from emissor_nfe.models.recipient import IE_CONTRIBUINTE, IND_IE_DEST, Recipient
from emissor_nfe.models.taxes import IcmsTax, TaxComputation, TaxRecord
from emissor_nfe.services.exceptions import (
    InvalidAccessKeyInput,
    InvalidCfop,
    InvalidTotals,
    MissingRequiredField,
    NFeValidationError,
)
from emissor_nfe.services.tax_rules import resolve_draft_taxes
from emissor_nfe.utils.access_key import generate_access_key
from emissor_nfe.utils.formatters import fmt_decimal, money
from emissor_nfe.utils.uf import FOREIGN_UF, uf_code
from emissor_nfe.utils.validators import (
    is_valid_cnpj,
    only_digits,
    require,
    validate_cest,
    validate_cfop,
    validate_city_code,
    validate_document,
    validate_ncm,
)

logger = logging.getLogger(__name__)

NSMAP = {None: NFE_NS}

HOMOLOGACAO_RECIPIENT_NAME = "NF-E EMITIDA EM AMBIENTE DE HOMOLOGACAO - SEM VALOR FISCAL"

ZERO = Decimal("0")


class Destination(IntEnum):
    """idDest: where the operation ends relative to the emitter's UF."""

    INTERNAL = 1
    INTERSTATE = 2
    INTERNATIONAL = 3


# First CFOP digit per (tpNF, idDest)
_CFOP_PREFIX = {
    (1, Destination.INTERNAL): "5",
    (1, Destination.INTERSTATE): "6",
    (1, Destination.INTERNATIONAL): "7",
    (0, Destination.INTERNAL): "1",
    (0, Destination.INTERSTATE): "2",
    (0, Destination.INTERNATIONAL): "3",
}


@dataclass(frozen=True)
class Totals:
    v_prod: Decimal
    v_frete: Decimal
    v_seg: Decimal
    v_desc: Decimal
    v_bc: Decimal
    v_icms: Decimal
    v_ipi: Decimal
    v_pis: Decimal
    v_cofins: Decimal
    v_nf: Decimal
    clamped: bool = False


@dataclass(frozen=True)
class CanonicalDocument:
    """Unsigned <NFe> tree plus the values derived while building it.

    The element must not be modified once built; the signer works on a copy.
    """

    element: etree._Element
    access_key: str
    totals: Totals
    destination: Destination
    environment: str
    taxes: tuple[TaxComputation, ...]

    @property
    def id(self) -> str:
        return f"NFe{self.access_key}"

    @property
    def xml_bytes(self) -> bytes:
        return etree.tostring(self.element, encoding="utf-8")


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, f"{{{NFE_NS}}}{tag}")
    if text is not None:
        el.text = text
    return el


def _money(value: Decimal) -> str:
    return fmt_decimal(value, 2)


def _rate(value: Decimal) -> str:
    return fmt_decimal(value, 4)


# --- Validation ---


def _validate_address(address: Address, prefix: str, foreign: bool = False) -> None:
    require(address.logradouro, f"{prefix}.logradouro")
    require(address.numero, f"{prefix}.numero")
    require(address.bairro, f"{prefix}.bairro")
    require(address.municipio, f"{prefix}.municipio")
    uf = require(address.uf, f"{prefix}.uf")
    if foreign:
        return
    require(address.cod_municipio, f"{prefix}.cod_municipio")
    validate_city_code(address.cod_municipio, f"{prefix}.cod_municipio")
    try:
        uf_code(uf)
    except ValueError as exc:
        raise NFeValidationError(f"{prefix}.uf: {exc}") from None


def _validate_emitter(emitter: Emitter) -> str:
    cnpj = require(emitter.cnpj, "emitente.cnpj")
    digits = re.sub(r"[.\-/\s]", "", cnpj)
    if not digits.isdigit() or len(digits) != 14:
        raise InvalidAccessKeyInput(f"emitente.cnpj: CNPJ deve ter 14 dígitos numéricos ('{cnpj}')")
    if not is_valid_cnpj(digits):
        raise NFeValidationError(f"emitente.cnpj: CNPJ inválido '{cnpj}'")
    require(emitter.razao_social, "emitente.razao_social")
    require(emitter.ie, "emitente.ie")
    _validate_address(emitter.endereco, "emitente.endereco")
    return digits


def _validate_recipient(recipient: Recipient) -> None:
    require(recipient.nome, "destinatario.nome")
    if not recipient.is_foreign:
        require(recipient.documento, "destinatario.documento")
        validate_document(recipient.documento, "destinatario.documento")
    if recipient.ind_ie_dest not in IND_IE_DEST:
        raise NFeValidationError(
            f"destinatario.ind_ie_dest: '{recipient.ind_ie_dest}' inválido (use {', '.join(IND_IE_DEST)})"
        )
    if recipient.ind_ie_dest == IE_CONTRIBUINTE and not recipient.ie:
        raise MissingRequiredField("destinatario.ie", "destinatario.ie: obrigatória para contribuinte do ICMS")
    _validate_address(recipient.endereco, "destinatario.endereco", foreign=recipient.is_foreign)


def _validate_item(index: int, item: LineItem) -> None:
    prefix = f"itens[{index}]"
    require(item.codigo, f"{prefix}.codigo")
    require(item.descricao, f"{prefix}.descricao")
    validate_ncm(require(item.ncm, f"{prefix}.ncm"))
    validate_cfop(require(item.cfop, f"{prefix}.cfop"))
    if item.cest:
        validate_cest(item.cest)


def _validate_numbering(draft: InvoiceDraft) -> None:
    if not 1 <= draft.serie <= 999:
        raise InvalidAccessKeyInput(f"Série deve estar entre 1 e 999 (recebido {draft.serie})")
    if not 1 <= draft.numero <= 999_999_999:
        raise InvalidAccessKeyInput(
            f"Número da NF-e deve estar entre 1 e 999999999 (recebido {draft.numero})"
        )


# --- Derived values ---


def determine_destination(emitter: Emitter, recipient: Recipient) -> Destination:
    if recipient.is_foreign:
        return Destination.INTERNATIONAL
    if recipient.endereco.uf == emitter.uf:
        return Destination.INTERNAL
    return Destination.INTERSTATE


def check_cfop(cfop: str, tipo_operacao: int, destination: Destination) -> None:
    expected = _CFOP_PREFIX.get((tipo_operacao, destination))
    if expected is None:
        raise NFeValidationError(f"Tipo de operação inválido: {tipo_operacao}")
    if not cfop.startswith(expected):
        raise InvalidCfop(
            f"CFOP {cfop} incompatível com operação "
            f"{'saída' if tipo_operacao == 1 else 'entrada'} {destination.name.lower()} "
            f"(esperado {expected}xxx)"
        )


def compute_totals(
    items: Sequence[LineItem],
    taxes: Sequence[TaxComputation],
    environment: str,
) -> Totals:
    """Aggregate item values; vNF = vProd + vFrete + vSeg + vIPI - vDesc."""
    v_prod = sum((i.total_value for i in items), ZERO)
    v_frete = money(sum((i.frete for i in items), ZERO))
    v_seg = money(sum((i.seguro for i in items), ZERO))
    v_desc = money(sum((i.desconto for i in items), ZERO))
    icms_with_base = [t.icms for t in taxes if t.icms.has_triple]
    v_bc = sum((t.base for t in icms_with_base), ZERO)
    v_icms = sum((t.value for t in icms_with_base), ZERO)
    v_ipi = sum((t.ipi.value for t in taxes if t.ipi is not None), ZERO)
    v_pis = sum((t.pis.value for t in taxes), ZERO)
    v_cofins = sum((t.cofins.value for t in taxes), ZERO)

    v_nf = money(v_prod + v_frete + v_seg + v_ipi - v_desc)
    clamped = False
    if v_nf < 0:
        if environment == PRODUCAO:
            raise InvalidTotals(f"Valor total da NF-e negativo ({v_nf}): descontos excedem o total")
        logger.warning("vNF negativo (%s) em homologação, ajustado para 0.00", v_nf)
        v_nf = ZERO
        clamped = True

    return Totals(
        v_prod=money(v_prod),
        v_frete=v_frete,
        v_seg=v_seg,
        v_desc=v_desc,
        v_bc=money(v_bc),
        v_icms=money(v_icms),
        v_ipi=money(v_ipi),
        v_pis=money(v_pis),
        v_cofins=money(v_cofins),
        v_nf=money(v_nf),
        clamped=clamped,
    )


# --- XML groups ---


def _address(parent: etree._Element, tag: str, address: Address) -> None:
    end = _sub(parent, tag)
    _sub(end, "xLgr", address.logradouro)
    _sub(end, "nro", address.numero)
    if address.complemento:
        _sub(end, "xCpl", address.complemento)
    _sub(end, "xBairro", address.bairro)
    foreign = address.uf == FOREIGN_UF
    _sub(end, "cMun", "9999999" if foreign else address.cod_municipio)
    _sub(end, "xMun", "EXTERIOR" if foreign else address.municipio)
    _sub(end, "UF", address.uf)
    if address.cep and not foreign:
        _sub(end, "CEP", only_digits(address.cep))
    _sub(end, "cPais", address.cod_pais)
    _sub(end, "xPais", address.pais)
    if address.fone:
        _sub(end, "fone", only_digits(address.fone))


def _st_zeros(group: etree._Element) -> None:
    # Substituição tributária is not computed; the mandatory ST fields go out zeroed.
    _sub(group, "modBCST", "4")
    _sub(group, "vBCST", "0.00")
    _sub(group, "pICMSST", "0.0000")
    _sub(group, "vICMSST", "0.00")


def _icms_triple(group: etree._Element, icms: IcmsTax, reduction: bool = False) -> None:
    _sub(group, "modBC", icms.modality)
    if reduction:
        _sub(group, "pRedBC", _rate(icms.reduction or ZERO))
    _sub(group, "vBC", _money(icms.base or ZERO))
    _sub(group, "pICMS", _rate(icms.rate or ZERO))
    _sub(group, "vICMS", _money(icms.value or ZERO))


_CSOSN_GROUP = {
    "101": "ICMSSN101",
    "102": "ICMSSN102", "103": "ICMSSN102", "300": "ICMSSN102", "400": "ICMSSN102",
    "201": "ICMSSN201",
    "202": "ICMSSN202", "203": "ICMSSN202",
    "500": "ICMSSN500",
    "900": "ICMSSN900",
}

_CST_GROUP = {
    "00": "ICMS00", "10": "ICMS10", "20": "ICMS20", "30": "ICMS30",
    "40": "ICMS40", "41": "ICMS40", "50": "ICMS40",
    "51": "ICMS51", "60": "ICMS60", "70": "ICMS70", "90": "ICMS90",
}


def _icms(imposto: etree._Element, icms: IcmsTax) -> None:
    wrapper = _sub(imposto, "ICMS")
    if icms.is_csosn:
        group = _sub(wrapper, _CSOSN_GROUP[icms.code])
        _sub(group, "orig", str(icms.origin))
        _sub(group, "CSOSN", icms.code)
        if icms.code in ("101", "201"):
            if icms.code == "201":
                _st_zeros(group)
            _sub(group, "pCredSN", "0.0000")
            _sub(group, "vCredICMSSN", "0.00")
        elif icms.code in ("202", "203"):
            _st_zeros(group)
        return

    group = _sub(wrapper, _CST_GROUP[icms.code])
    _sub(group, "orig", str(icms.origin))
    _sub(group, "CST", icms.code)
    if icms.code in ("00", "51", "90"):
        _icms_triple(group, icms)
    elif icms.code == "10":
        _icms_triple(group, icms)
        _st_zeros(group)
    elif icms.code == "20":
        _icms_triple(group, icms, reduction=True)
    elif icms.code == "70":
        _icms_triple(group, icms, reduction=True)
        _st_zeros(group)
    elif icms.code == "30":
        _st_zeros(group)


def _ipi(imposto: etree._Element, ipi: TaxRecord) -> None:
    wrapper = _sub(imposto, "IPI")
    _sub(wrapper, "cEnq", ipi.enquadramento or "999")
    if ipi.code in ("00", "49", "50", "99"):
        trib = _sub(wrapper, "IPITrib")
        _sub(trib, "CST", ipi.code)
        _sub(trib, "vBC", _money(ipi.base))
        _sub(trib, "pIPI", _rate(ipi.rate))
        _sub(trib, "vIPI", _money(ipi.value))
    else:
        nt = _sub(wrapper, "IPINT")
        _sub(nt, "CST", ipi.code)


def _contribution(imposto: etree._Element, name: str, record: TaxRecord) -> None:
    """PIS or COFINS group: Aliq for 01/02, NT for 04-09, Outr otherwise."""
    wrapper = _sub(imposto, name)
    if record.code in ("01", "02"):
        group = _sub(wrapper, f"{name}Aliq")
    elif record.code in ("04", "05", "06", "07", "08", "09"):
        group = _sub(wrapper, f"{name}NT")
        _sub(group, "CST", record.code)
        return
    else:
        group = _sub(wrapper, f"{name}Outr")
    _sub(group, "CST", record.code)
    _sub(group, "vBC", _money(record.base))
    _sub(group, f"p{name}", _rate(record.rate))
    _sub(group, f"v{name}", _money(record.value))


def _item(inf: etree._Element, n_item: int, item: LineItem, taxes: TaxComputation) -> None:
    det = _sub(inf, "det")
    det.set("nItem", str(n_item))

    prod = _sub(det, "prod")
    _sub(prod, "cProd", item.codigo)
    _sub(prod, "cEAN", item.gtin)
    _sub(prod, "xProd", item.descricao)
    _sub(prod, "NCM", item.ncm)
    if item.cest:
        _sub(prod, "CEST", item.cest)
    _sub(prod, "CFOP", item.cfop)
    _sub(prod, "uCom", item.unidade)
    _sub(prod, "qCom", fmt_decimal(item.quantidade, 4))
    _sub(prod, "vUnCom", fmt_decimal(item.valor_unitario, 10))
    _sub(prod, "vProd", _money(item.total_value))
    _sub(prod, "cEANTrib", item.gtin)
    _sub(prod, "uTrib", item.unidade)
    _sub(prod, "qTrib", fmt_decimal(item.quantidade, 4))
    _sub(prod, "vUnTrib", fmt_decimal(item.valor_unitario, 10))
    if item.frete:
        _sub(prod, "vFrete", _money(item.frete))
    if item.seguro:
        _sub(prod, "vSeg", _money(item.seguro))
    if item.desconto:
        _sub(prod, "vDesc", _money(item.desconto))
    _sub(prod, "indTot", "1")

    imposto = _sub(det, "imposto")
    _icms(imposto, taxes.icms)
    if taxes.ipi is not None:
        _ipi(imposto, taxes.ipi)
    _contribution(imposto, "PIS", taxes.pis)
    _contribution(imposto, "COFINS", taxes.cofins)


def _totals(inf: etree._Element, totals: Totals) -> None:
    tot = _sub(_sub(inf, "total"), "ICMSTot")
    for tag, value in (
        ("vBC", totals.v_bc),
        ("vICMS", totals.v_icms),
        ("vICMSDeson", ZERO),
        ("vFCP", ZERO),
        ("vBCST", ZERO),
        ("vST", ZERO),
        ("vFCPST", ZERO),
        ("vFCPSTRet", ZERO),
        ("vProd", totals.v_prod),
        ("vFrete", totals.v_frete),
        ("vSeg", totals.v_seg),
        ("vDesc", totals.v_desc),
        ("vII", ZERO),
        ("vIPI", totals.v_ipi),
        ("vIPIDevol", ZERO),
        ("vPIS", totals.v_pis),
        ("vCOFINS", totals.v_cofins),
        ("vOutro", ZERO),
        ("vNF", totals.v_nf),
    ):
        _sub(tot, tag, _money(value))


def _transport(inf: etree._Element, draft: InvoiceDraft) -> None:
    transp = _sub(inf, "transp")
    transport = draft.transporte
    _sub(transp, "modFrete", str(transport.modalidade if transport else 9))
    if transport is None:
        return
    carrier = transport.transportadora
    if carrier is not None:
        transporta = _sub(transp, "transporta")
        doc = only_digits(carrier.documento)
        if doc:
            _sub(transporta, "CNPJ" if len(doc) == 14 else "CPF", doc)
        _sub(transporta, "xNome", carrier.nome)
        if carrier.ie:
            _sub(transporta, "IE", carrier.ie)
        if carrier.endereco:
            _sub(transporta, "xEnder", carrier.endereco)
        if carrier.municipio:
            _sub(transporta, "xMun", carrier.municipio)
        if carrier.uf:
            _sub(transporta, "UF", carrier.uf)
    for volume in transport.volumes:
        vol = _sub(transp, "vol")
        _sub(vol, "qVol", str(volume.quantidade))
        if volume.especie:
            _sub(vol, "esp", volume.especie)
        if volume.marca:
            _sub(vol, "marca", volume.marca)
        if volume.numeracao:
            _sub(vol, "nVol", volume.numeracao)
        if volume.peso_liquido is not None:
            _sub(vol, "pesoL", fmt_decimal(volume.peso_liquido, 3))
        if volume.peso_bruto is not None:
            _sub(vol, "pesoB", fmt_decimal(volume.peso_bruto, 3))


def _payment(inf: etree._Element, draft: InvoiceDraft, totals: Totals) -> None:
    pag = _sub(inf, "pag")
    payment = draft.pagamento
    if payment is None or not payment.formas:
        det = _sub(pag, "detPag")
        _sub(det, "tPag", SEM_PAGAMENTO)
        _sub(det, "vPag", "0.00")
        return
    for forma in payment.formas:
        det = _sub(pag, "detPag")
        _sub(det, "indPag", str(payment.indicador))
        _sub(det, "tPag", forma.tipo)
        _sub(det, "vPag", _money(forma.valor))
    paid = money(sum((f.valor for f in payment.formas), ZERO))
    if paid > totals.v_nf:
        _sub(pag, "vTroco", _money(paid - totals.v_nf))


def build_nfe(
    draft: InvoiceDraft,
    taxes: Sequence[TaxComputation] | None = None,
    *,
    codigo_numerico: str | None = None,
    emitted_at: datetime | None = None,
) -> CanonicalDocument:
    """Build the unsigned <NFe> element for *draft*.

    *taxes* holds one TaxComputation per item, in order; when omitted the
    items are resolved against the emitter's regime here. The same draft,
    seed and emission time always produce byte-identical XML.
    """
    cnpj = _validate_emitter(draft.emitter)
    _validate_recipient(draft.recipient)
    if not draft.itens:
        raise MissingRequiredField("itens", "A NF-e deve ter ao menos um item")
    for index, item in enumerate(draft.itens, start=1):
        _validate_item(index, item)
    _validate_numbering(draft)
    require(draft.natureza_operacao, "natureza_operacao")

    if taxes is None:
        taxes = resolve_draft_taxes(draft)
    if len(taxes) != len(draft.itens):
        raise NFeValidationError(
            f"Impostos calculados para {len(taxes)} itens, mas a nota tem {len(draft.itens)}"
        )

    destination = determine_destination(draft.emitter, draft.recipient)
    for item in draft.itens:
        check_cfop(item.cfop, draft.tipo_operacao, destination)

    totals = compute_totals(draft.itens, taxes, draft.environment)

    emitted_at = emitted_at or datetime.now(BRT)
    if emitted_at.tzinfo is None:
        emitted_at = emitted_at.replace(tzinfo=BRT)
    access_key = generate_access_key(
        uf=draft.emitter.uf,
        emitted_at=emitted_at,
        document=cnpj,
        modelo=draft.modelo,
        serie=draft.serie,
        numero=draft.numero,
        tp_emis=draft.tipo_emissao,
        codigo_numerico=codigo_numerico,
    )

    nfe = etree.Element(f"{{{NFE_NS}}}NFe", nsmap=NSMAP)  # type: ignore[arg-type]
    inf = _sub(nfe, "infNFe")
    inf.set("Id", f"NFe{access_key}")
    inf.set("versao", NFE_VERSION)

    ide = _sub(inf, "ide")
    _sub(ide, "cUF", access_key[0:2])
    _sub(ide, "cNF", access_key[35:43])
    _sub(ide, "natOp", draft.natureza_operacao)
    _sub(ide, "mod", draft.modelo)
    _sub(ide, "serie", str(draft.serie))
    _sub(ide, "nNF", str(draft.numero))
    _sub(ide, "dhEmi", emitted_at.isoformat(timespec="seconds"))
    _sub(ide, "tpNF", str(draft.tipo_operacao))
    _sub(ide, "idDest", str(int(destination)))
    _sub(ide, "cMunFG", draft.emitter.endereco.cod_municipio)
    _sub(ide, "tpImp", "1")
    _sub(ide, "tpEmis", str(draft.tipo_emissao))
    _sub(ide, "cDV", access_key[43])
    _sub(ide, "tpAmb", draft.tp_amb)
    _sub(ide, "finNFe", str(draft.finalidade))
    _sub(ide, "indFinal", str(draft.consumidor_final))
    _sub(ide, "indPres", str(draft.presenca))
    _sub(ide, "procEmi", "0")
    _sub(ide, "verProc", draft.emitter.ver_aplic)

    emitter = draft.emitter
    emit = _sub(inf, "emit")
    _sub(emit, "CNPJ", cnpj)
    _sub(emit, "xNome", emitter.razao_social)
    if emitter.nome_fantasia:
        _sub(emit, "xFant", emitter.nome_fantasia)
    _address(emit, "enderEmit", emitter.endereco)
    _sub(emit, "IE", only_digits(emitter.ie) or emitter.ie)
    if emitter.im:
        _sub(emit, "IM", emitter.im)
    _sub(emit, "CRT", emitter.regime.crt)

    recipient = draft.recipient
    dest = _sub(inf, "dest")
    if recipient.is_foreign:
        _sub(dest, "idEstrangeiro", recipient.documento)
    else:
        doc = only_digits(recipient.documento)
        _sub(dest, "CNPJ" if len(doc) == 14 else "CPF", doc)
    if draft.environment == PRODUCAO:
        _sub(dest, "xNome", recipient.nome)
    else:
        _sub(dest, "xNome", HOMOLOGACAO_RECIPIENT_NAME)
    _address(dest, "enderDest", recipient.endereco)
    _sub(dest, "indIEDest", recipient.ind_ie_dest)
    if recipient.ie and recipient.ind_ie_dest == IE_CONTRIBUINTE:
        _sub(dest, "IE", only_digits(recipient.ie))
    if recipient.email:
        _sub(dest, "email", recipient.email)

    for n_item, (item, item_taxes) in enumerate(zip(draft.itens, taxes, strict=True), start=1):
        _item(inf, n_item, item, item_taxes)

    _totals(inf, totals)
    _transport(inf, draft)
    _payment(inf, draft, totals)

    if draft.info_complementar:
        _sub(_sub(inf, "infAdic"), "infCpl", draft.info_complementar)

    logger.info(
        "NF-e %s montada: %d item(ns), vNF %s, destino %s",
        access_key, len(draft.itens), totals.v_nf, destination.name,
    )
    return CanonicalDocument(
        element=nfe,
        access_key=access_key,
        totals=totals,
        destination=destination,
        environment=draft.environment,
        taxes=tuple(taxes),
    )
