from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from lxml import etree

from emissor_nfe.config import BRT, EVENT_VERSION, NFE_NS
from emissor_nfe.models.outcomes import Cancelled, CorrectionRegistered, Rejected
from emissor_nfe.services import soap
from emissor_nfe.services.exceptions import NFeValidationError, SefazResponseError
from emissor_nfe.services.sefaz_client import SefazGateway, new_batch_id
from emissor_nfe.services.sefaz_status import format_status
from emissor_nfe.services.xml_signer import sign_element
from emissor_nfe.utils.validators import validate_access_key, validate_free_text, validate_protocol

logger = logging.getLogger(__name__)

NSMAP = {None: NFE_NS}

CANCELAMENTO = "110111"
CARTA_CORRECAO = "110110"

LOTE_EVENTO_PROCESSADO = 128
CANCELAMENTO_OK = frozenset({135, 155})
CORRECAO_OK = frozenset({135, 136})

MAX_CORRECTION_SEQUENCE = 20

CONDICAO_USO = (
    "A Carta de Correcao e disciplinada pelo paragrafo 1o-A do art. 7o do Convenio S/N, "
    "de 15 de dezembro de 1970 e pode ser utilizada para regularizacao de erro ocorrido "
    "na emissao de documento fiscal, desde que o erro nao esteja relacionado com: "
    "I - as variaveis que determinam o valor do imposto tais como: base de calculo, "
    "aliquota, diferenca de preco, quantidade, valor da operacao ou da prestacao; "
    "II - a correcao de dados cadastrais que implique mudanca do remetente ou do "
    "destinatario; III - a data de emissao ou de saida."
)


@dataclass(frozen=True)
class EventReply:
    status_code: int
    reason: str
    protocol_number: str | None
    registered_at: str | None
    event_xml: bytes


def _sub(parent: etree._Element, tag: str, text: str | None = None) -> etree._Element:
    el = etree.SubElement(parent, f"{{{NFE_NS}}}{tag}")
    if text is not None:
        el.text = text
    return el


def event_id(tp_evento: str, access_key: str, sequence: int) -> str:
    """infEvento Id: 'ID' + tpEvento + chNFe + nSeqEvento (2 digits)."""
    return f"ID{tp_evento}{access_key}{sequence:02d}"


def check_cancellation(access_key: str, protocol_number: str, justification: str, sequence: int) -> str:
    """Validate a cancellation request; returns the normalized justification."""
    validate_access_key(access_key)
    validate_protocol(protocol_number)
    justification = validate_free_text(justification, "Justificativa", 15, 255)
    if sequence < 1:
        raise NFeValidationError(f"nSeqEvento deve ser positivo ({sequence})")
    return justification


def check_correction(access_key: str, correction: str, sequence: int) -> str:
    """Validate a carta de correção request; returns the normalized text."""
    validate_access_key(access_key)
    correction = validate_free_text(correction, "Correção", 15, 1000)
    if not 1 <= sequence <= MAX_CORRECTION_SEQUENCE:
        raise NFeValidationError(
            f"nSeqEvento da carta de correção deve estar entre 1 e {MAX_CORRECTION_SEQUENCE} ({sequence})"
        )
    return correction


class EventProcessor:
    """Builds, signs and sends NF-e events through a SefazGateway.

    Local checks (access key, protocol, text length, sequence) run before
    anything is signed or sent.
    """

    def __init__(
        self,
        gateway: SefazGateway,
        *,
        now: Callable[[], datetime] = lambda: datetime.now(BRT),
        **sign_options,
    ) -> None:
        self.gateway = gateway
        self._now = now
        self._sign_options = sign_options

    def build_event(
        self,
        access_key: str,
        tp_evento: str,
        sequence: int,
        description: str,
        details: dict[str, str],
    ) -> etree._Element:
        """Return the unsigned <evento> element."""
        evento = etree.Element(f"{{{NFE_NS}}}evento", nsmap=NSMAP)  # type: ignore[arg-type]
        evento.set("versao", EVENT_VERSION)
        inf = _sub(evento, "infEvento")
        inf.set("Id", event_id(tp_evento, access_key, sequence))
        _sub(inf, "cOrgao", access_key[0:2])
        _sub(inf, "tpAmb", self.gateway.config.tp_amb)
        _sub(inf, "CNPJ", access_key[6:20])
        _sub(inf, "chNFe", access_key)
        _sub(inf, "dhEvento", self._now().isoformat(timespec="seconds"))
        _sub(inf, "tpEvento", tp_evento)
        _sub(inf, "nSeqEvento", str(sequence))
        _sub(inf, "verEvento", EVENT_VERSION)
        det = _sub(inf, "detEvento")
        det.set("versao", EVENT_VERSION)
        _sub(det, "descEvento", description)
        for tag, value in details.items():
            _sub(det, tag, value)
        return evento

    def _send(self, evento: etree._Element) -> EventReply | Rejected:
        inf = evento.find(f"{{{NFE_NS}}}infEvento")
        signed = sign_element(evento, inf.get("Id"), self.gateway.identity, **self._sign_options)

        env = etree.Element(f"{{{NFE_NS}}}envEvento", nsmap=NSMAP)  # type: ignore[arg-type]
        env.set("versao", EVENT_VERSION)
        _sub(env, "idLote", new_batch_id())
        env.append(signed)

        ret = self.gateway.send_event(env)
        status, reason = soap.status_of(ret)
        access_key = inf.findtext(f"{{{NFE_NS}}}chNFe")
        if status != LOTE_EVENTO_PROCESSADO:
            logger.warning("Lote de evento rejeitado: %s", format_status(status, reason))
            return Rejected(status_code=status, reason=reason, access_key=access_key)

        ret_evento = soap.find(ret, "retEvento")
        ret_inf = soap.find(ret_evento, "infEvento") if ret_evento is not None else None
        if ret_inf is None:
            raise SefazResponseError("retEnvEvento sem retEvento/infEvento", response=etree.tostring(ret))
        status, reason = soap.status_of(ret_inf)

        proc = etree.Element(f"{{{NFE_NS}}}procEventoNFe", nsmap=NSMAP)  # type: ignore[arg-type]
        proc.set("versao", EVENT_VERSION)
        proc.append(signed)
        proc.append(ret_evento)
        return EventReply(
            status_code=status,
            reason=reason,
            protocol_number=soap.text(ret_inf, "nProt"),
            registered_at=soap.text(ret_inf, "dhRegEvento"),
            event_xml=etree.tostring(proc, xml_declaration=True, encoding="utf-8"),
        )

    def cancel(
        self,
        access_key: str,
        protocol_number: str,
        justification: str,
        sequence: int = 1,
    ) -> Cancelled | Rejected:
        """Register a cancellation (110111). 135 or 155 means cancelled."""
        justification = check_cancellation(access_key, protocol_number, justification, sequence)

        evento = self.build_event(
            access_key,
            CANCELAMENTO,
            sequence,
            "Cancelamento",
            {"nProt": protocol_number, "xJust": justification},
        )
        reply = self._send(evento)
        if isinstance(reply, Rejected):
            return reply
        if reply.status_code not in CANCELAMENTO_OK:
            logger.warning("Cancelamento de %s rejeitado: %s", access_key, format_status(reply.status_code, reply.reason))
            return Rejected(status_code=reply.status_code, reason=reply.reason, access_key=access_key)
        logger.info("NF-e %s cancelada, protocolo %s", access_key, reply.protocol_number)
        return Cancelled(
            access_key=access_key,
            protocol_number=reply.protocol_number or "",
            registered_at=reply.registered_at or "",
            status_code=reply.status_code,
            reason=reply.reason,
            event_xml=reply.event_xml,
        )

    def correct(self, access_key: str, correction: str, sequence: int) -> CorrectionRegistered | Rejected:
        """Register a carta de correção (110110). 135 or 136 means registered."""
        correction = check_correction(access_key, correction, sequence)

        evento = self.build_event(
            access_key,
            CARTA_CORRECAO,
            sequence,
            "Carta de Correcao",
            {"xCorrecao": correction, "xCondUso": CONDICAO_USO},
        )
        reply = self._send(evento)
        if isinstance(reply, Rejected):
            return reply
        if reply.status_code not in CORRECAO_OK:
            return Rejected(status_code=reply.status_code, reason=reply.reason, access_key=access_key)
        logger.info("Carta de correção %d registrada para %s", sequence, access_key)
        return CorrectionRegistered(
            access_key=access_key,
            protocol_number=reply.protocol_number or "",
            registered_at=reply.registered_at or "",
            sequence=sequence,
            status_code=reply.status_code,
            reason=reply.reason,
            event_xml=reply.event_xml,
        )
