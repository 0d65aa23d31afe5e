"""SOAP 1.2 envelopes for the SEFAZ NFe 4.00 web services."""

from __future__ import annotations

import copy
from dataclasses import dataclass

from lxml import etree

from emissor_nfe.config import NFE_NS, WSDL_NS
from emissor_nfe.services.exceptions import SefazResponseError
from emissor_nfe.services.xml_encoder import encode_message

SOAP12_NS = "http://www.w3.org/2003/05/soap-envelope"

_NS = {"nfe": NFE_NS, "soap": SOAP12_NS}

_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


@dataclass(frozen=True)
class SoapService:
    wsdl: str
    operation: str
    endpoint: str  # key into the endpoint table

    @property
    def namespace(self) -> str:
        return f"{WSDL_NS}/{self.wsdl}"

    @property
    def action(self) -> str:
        return f"{self.namespace}/{self.operation}"

    @property
    def content_type(self) -> str:
        return f'application/soap+xml; charset=utf-8; action="{self.action}"'


AUTORIZACAO = SoapService("NFeAutorizacao4", "nfeAutorizacaoLote", "autorizacao")
AUTORIZACAO_ZIP = SoapService("NFeAutorizacao4", "nfeAutorizacaoLoteZip", "autorizacao")
RET_AUTORIZACAO = SoapService("NFeRetAutorizacao4", "nfeRetAutorizacaoLote", "ret_autorizacao")
CONSULTA_PROTOCOLO = SoapService("NFeConsultaProtocolo4", "nfeConsultaNF", "consulta_protocolo")
STATUS_SERVICO = SoapService("NFeStatusServico4", "nfeStatusServicoNF", "status_servico")
RECEPCAO_EVENTO = SoapService("NFeRecepcaoEvento4", "nfeRecepcaoEvento", "recepcao_evento")


def build_envelope(service: SoapService, message: etree._Element, *, compress: bool = False) -> bytes:
    """Wrap *message* in a SOAP 1.2 envelope for *service*.

    With *compress*, the message goes gzip+base64 encoded in nfeDadosMsgZip.
    """
    envelope = etree.Element(f"{{{SOAP12_NS}}}Envelope", nsmap={"soap12": SOAP12_NS})  # type: ignore[dict-item]
    body = etree.SubElement(envelope, f"{{{SOAP12_NS}}}Body")
    if compress:
        dados = etree.SubElement(
            body, f"{{{service.namespace}}}nfeDadosMsgZip", nsmap={None: service.namespace}  # type: ignore[dict-item]
        )
        dados.text = encode_message(message)
    else:
        dados = etree.SubElement(
            body, f"{{{service.namespace}}}nfeDadosMsg", nsmap={None: service.namespace}  # type: ignore[dict-item]
        )
        dados.append(copy.deepcopy(message))
    return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")


def parse_reply(content: bytes, result_tag: str) -> etree._Element:
    """Return the *result_tag* element (e.g. retEnviNFe) from a SOAP reply body.

    Raises SefazResponseError for unparseable bodies, SOAP faults or replies
    missing the expected result.
    """
    try:
        root = etree.fromstring(content, _PARSER)
    except etree.XMLSyntaxError as exc:
        raise SefazResponseError(f"Resposta SEFAZ não é XML válido: {exc}", response=content) from exc

    result = root if etree.QName(root).localname == result_tag else root.find(f".//nfe:{result_tag}", _NS)
    if result is not None:
        return result

    fault = root.find(".//soap:Fault", _NS)
    if fault is not None:
        reason = " ".join(t.strip() for t in fault.itertext() if t.strip())
        raise SefazResponseError(f"SOAP Fault: {reason[:500]}", response=content)
    raise SefazResponseError(f"Resposta SEFAZ sem {result_tag}", response=content)


def find(el: etree._Element, path: str) -> etree._Element | None:
    """Find a descendant by a slash-separated path of NFe-namespace tags."""
    return el.find("/".join(f"nfe:{part}" for part in path.split("/")), _NS)


def text(el: etree._Element, path: str) -> str | None:
    found = find(el, path)
    if found is None or found.text is None:
        return None
    return found.text.strip()


def status_of(el: etree._Element) -> tuple[int, str]:
    """Return (cStat, xMotivo) of a reply element; cStat is numeric, leading zeros dropped."""
    raw = text(el, "cStat")
    if raw is None or not raw.isdigit():
        raise SefazResponseError(
            f"cStat ausente ou inválido em {etree.QName(el).localname}: {raw!r}",
            response=etree.tostring(el),
        )
    return int(raw), text(el, "xMotivo") or ""
