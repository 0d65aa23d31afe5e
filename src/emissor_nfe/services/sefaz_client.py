from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

import requests.exceptions
from lxml import etree
from requests_pkcs12 import post

from emissor_nfe.config import (
    BRT,
    NFE_NS,
    NFE_VERSION,
    SEFAZ_TIMEOUT,
    TP_AMB,
    build_endpoints,
)
from emissor_nfe.models.outcomes import Authorized, Failed, Rejected, ServiceStatus, TimedOut
from emissor_nfe.services import soap
from emissor_nfe.services.exceptions import (
    NFeValidationError,
    SefazResponseError,
    TransportError,
)
from emissor_nfe.services.http_retry import (
    SEFAZ_READ,
    SEFAZ_SUBMIT,
    RetryPolicy,
    maybe_delivered,
    raise_for_retryable_status,
    retry_call,
)
from emissor_nfe.services.sefaz_status import status_info, user_message
from emissor_nfe.services.xml_signer import SignedDocument
from emissor_nfe.utils.certificate import SigningIdentity
from emissor_nfe.utils.uf import uf_code

logger = logging.getLogger(__name__)

NSMAP = {None: NFE_NS}

# cStat values of the authorization web services
LOTE_RECEBIDO = 103
LOTE_PROCESSADO = 104
SERVICO_EM_OPERACAO = 107
AUTORIZADO = 100
AUTORIZADO_FORA_DE_PRAZO = 150

MAX_DOCUMENTS_PER_BATCH = 50

# Floor for the per-request timeout when a caller deadline is close
MIN_REQUEST_TIMEOUT = 1.0

Outcome = Authorized | Rejected | TimedOut | Failed


class BatchState(Enum):
    BUILT = "built"
    SUBMITTED = "submitted"
    IMMEDIATELY_AUTHORIZED = "immediately_authorized"
    BATCH_RECEIVED = "batch_received"
    REJECTED = "rejected"
    POLLING = "polling"
    AUTHORIZED = "authorized"
    TIMED_OUT = "timed_out"


_TRANSITIONS: dict[BatchState, frozenset[BatchState]] = {
    BatchState.BUILT: frozenset({BatchState.SUBMITTED}),
    BatchState.SUBMITTED: frozenset(
        {BatchState.IMMEDIATELY_AUTHORIZED, BatchState.BATCH_RECEIVED, BatchState.REJECTED}
    ),
    BatchState.BATCH_RECEIVED: frozenset({BatchState.POLLING}),
    BatchState.POLLING: frozenset(
        {BatchState.AUTHORIZED, BatchState.REJECTED, BatchState.TIMED_OUT}
    ),
}


class BatchStateError(RuntimeError):
    """A batch was asked to move to a state its lifecycle does not allow."""


def new_batch_id() -> str:
    """Return a 15-digit idLote: emission timestamp plus three random digits."""
    return datetime.now(BRT).strftime("%y%m%d%H%M%S") + f"{random.randint(0, 999):03d}"


@dataclass
class BatchSubmission:
    """One lote sent to NFeAutorizacao4, tracked until a terminal state."""

    batch_id: str
    documents: tuple[SignedDocument, ...]
    synchronous: bool = False
    state: BatchState = BatchState.BUILT
    receipt: str | None = None
    history: list[BatchState] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.batch_id.isdigit() or len(self.batch_id) > 15:
            raise NFeValidationError(f"idLote deve ter até 15 dígitos numéricos ('{self.batch_id}')")
        if not 1 <= len(self.documents) <= MAX_DOCUMENTS_PER_BATCH:
            raise NFeValidationError(
                f"Lote deve ter entre 1 e {MAX_DOCUMENTS_PER_BATCH} documentos ({len(self.documents)})"
            )
        if self.synchronous and len(self.documents) != 1:
            raise NFeValidationError("Envio síncrono aceita exatamente um documento por lote")
        self.history.append(self.state)

    @property
    def access_keys(self) -> list[str]:
        return [d.access_key for d in self.documents]

    def transition(self, new_state: BatchState) -> None:
        if new_state not in _TRANSITIONS.get(self.state, frozenset()):
            raise BatchStateError(
                f"Lote {self.batch_id}: transição inválida {self.state.name} -> {new_state.name}"
            )
        logger.info("Lote %s: %s -> %s", self.batch_id, self.state.name, new_state.name)
        self.state = new_state
        self.history.append(new_state)


@dataclass(frozen=True)
class PollingPolicy:
    initial_delay: float = 4.0
    interval: float = 2.0
    backoff_factor: float = 1.5
    max_delay: float = 15.0
    max_attempts: int = 5

    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before poll number *attempt* (0-indexed)."""
        if attempt == 0:
            return self.initial_delay
        return min(self.interval * self.backoff_factor ** (attempt - 1), self.max_delay)


@dataclass(frozen=True)
class GatewayConfig:
    uf: str
    environment: str
    endpoints: dict[str, str]
    timeout: float = SEFAZ_TIMEOUT
    polling: PollingPolicy = field(default_factory=PollingPolicy)
    submit_retry: RetryPolicy = SEFAZ_SUBMIT
    read_retry: RetryPolicy = SEFAZ_READ
    compress: bool = False

    @classmethod
    def for_emitter(cls, uf: str, environment: str, **kwargs) -> GatewayConfig:
        """Config with the built-in (or endpoints.yaml) URLs for the emitter's authorizer."""
        return cls(uf=uf, environment=environment, endpoints=build_endpoints(uf, environment), **kwargs)

    @property
    def tp_amb(self) -> str:
        return TP_AMB[self.environment]


@dataclass(frozen=True)
class ProtocolInfo:
    """Contents of a protNFe/infProt."""

    status_code: int
    reason: str
    access_key: str | None
    protocol_number: str | None
    received_at: str | None
    element: etree._Element

    @classmethod
    def from_element(cls, prot: etree._Element) -> ProtocolInfo:
        inf = soap.find(prot, "infProt")
        if inf is None:
            raise SefazResponseError("protNFe sem infProt", response=etree.tostring(prot))
        status, reason = soap.status_of(inf)
        return cls(
            status_code=status,
            reason=reason,
            access_key=soap.text(inf, "chNFe"),
            protocol_number=soap.text(inf, "nProt"),
            received_at=soap.text(inf, "dhRecbto"),
            element=prot,
        )

    @property
    def authorized(self) -> bool:
        return self.status_code in (AUTORIZADO, AUTORIZADO_FORA_DE_PRAZO)


def build_nfe_proc(nfe_xml: bytes, prot: etree._Element) -> bytes:
    """Distribution XML: the signed NFe followed by its authorization protocol."""
    proc = etree.Element(f"{{{NFE_NS}}}nfeProc", nsmap=NSMAP)  # type: ignore[arg-type]
    proc.set("versao", NFE_VERSION)
    proc.append(etree.fromstring(nfe_xml))
    proc.append(etree.fromstring(etree.tostring(prot)))
    return etree.tostring(proc, xml_declaration=True, encoding="utf-8")


def _message(tag: str, version: str = NFE_VERSION) -> etree._Element:
    el = etree.Element(f"{{{NFE_NS}}}{tag}", nsmap=NSMAP)  # type: ignore[arg-type]
    el.set("versao", version)
    return el


def _sub(parent: etree._Element, tag: str, text: str) -> etree._Element:
    el = etree.SubElement(parent, f"{{{NFE_NS}}}{tag}")
    el.text = text
    return el


def _may_have_arrived(exc: TransportError) -> bool:
    return exc.__cause__ is not None and maybe_delivered(exc.__cause__)


class SefazGateway:
    """Client for the SEFAZ NFe 4.00 web services of one authorizer.

    One instance per call: it holds no connection between requests, each
    post opens its own mutual-TLS session from the identity's PKCS#12.
    """

    def __init__(
        self,
        config: GatewayConfig,
        identity: SigningIdentity,
        *,
        sleep_func: Callable[[float], object] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.identity = identity
        self._sleep = sleep_func
        self._clock = clock

    # --- transport ---

    def _request_timeout(self, deadline: float | None) -> float:
        if deadline is None:
            return self.config.timeout
        return max(min(self.config.timeout, deadline - self._clock()), MIN_REQUEST_TIMEOUT)

    def _post(
        self,
        service: soap.SoapService,
        message: etree._Element,
        policy: RetryPolicy,
        result_tag: str,
        *,
        deadline: float | None = None,
    ) -> etree._Element:
        url = self.config.endpoints[service.endpoint]
        compress = service is soap.AUTORIZACAO_ZIP
        envelope = soap.build_envelope(service, message, compress=compress)

        def _do_post():
            resp = post(
                url,
                data=envelope,
                headers={"Content-Type": service.content_type},
                pkcs12_data=self.identity.pkcs12_data,
                pkcs12_password=self.identity.pkcs12_password,
                timeout=self._request_timeout(deadline),
            )
            raise_for_retryable_status(resp, policy, service.operation)
            return resp

        try:
            resp = retry_call(
                _do_post,
                policy,
                sleep_func=self._sleep,
                action=service.operation,
                deadline=deadline,
                clock=self._clock,
            )
        except requests.exceptions.RequestException as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise TransportError(
                f"Falha de comunicação com SEFAZ ({service.operation}): {type(exc).__name__}: {exc}",
                status_code=status,
            ) from exc

        if not resp.ok:
            body = resp.text[:500] if resp.text else ""
            raise TransportError(
                f"Erro SEFAZ {service.operation} ({resp.status_code}): {body}",
                status_code=resp.status_code,
            )
        return soap.parse_reply(resp.content, result_tag)

    # --- web services ---

    def submit_batch(self, batch: BatchSubmission) -> etree._Element:
        """Send the lote (enviNFe) and move the batch to its post-submission state.

        Only connection failures are retried; any other transport failure
        propagates with the batch left in SUBMITTED.
        """
        env = _message("enviNFe")
        _sub(env, "idLote", batch.batch_id)
        _sub(env, "indSinc", "1" if batch.synchronous else "0")
        for document in batch.documents:
            env.append(etree.fromstring(document.xml_bytes))

        batch.transition(BatchState.SUBMITTED)
        service = soap.AUTORIZACAO_ZIP if self.config.compress else soap.AUTORIZACAO
        ret = self._post(service, env, self.config.submit_retry, "retEnviNFe")

        status, reason = soap.status_of(ret)
        logger.info("Lote %s: cStat %d %s", batch.batch_id, status, reason)
        if status == LOTE_PROCESSADO:
            batch.transition(BatchState.IMMEDIATELY_AUTHORIZED)
        elif status == LOTE_RECEBIDO:
            receipt = soap.text(ret, "infRec/nRec")
            if not receipt:
                raise SefazResponseError("Lote recebido (103) sem número de recibo", response=etree.tostring(ret))
            batch.receipt = receipt
            batch.transition(BatchState.BATCH_RECEIVED)
        else:
            batch.transition(BatchState.REJECTED)
        return ret

    def query_receipt(self, receipt: str, *, deadline: float | None = None) -> etree._Element:
        """Query a lote receipt (consReciNFe). Idempotent, retried on transport errors until *deadline*."""
        cons = _message("consReciNFe")
        _sub(cons, "tpAmb", self.config.tp_amb)
        _sub(cons, "nRec", receipt)
        return self._post(soap.RET_AUTORIZACAO, cons, self.config.read_retry, "retConsReciNFe", deadline=deadline)

    def query_protocol(self, access_key: str) -> etree._Element:
        """Query the situation of one NF-e by access key (consSitNFe)."""
        cons = _message("consSitNFe")
        _sub(cons, "tpAmb", self.config.tp_amb)
        _sub(cons, "xServ", "CONSULTAR")
        _sub(cons, "chNFe", access_key)
        return self._post(soap.CONSULTA_PROTOCOLO, cons, self.config.read_retry, "retConsSitNFe")

    def service_status(self) -> ServiceStatus:
        """Ask the authorizer whether the service is running (consStatServ, 107 = online)."""
        cons = _message("consStatServ")
        _sub(cons, "tpAmb", self.config.tp_amb)
        _sub(cons, "cUF", uf_code(self.config.uf))
        _sub(cons, "xServ", "STATUS")
        ret = self._post(soap.STATUS_SERVICO, cons, self.config.read_retry, "retConsStatServ")
        status, reason = soap.status_of(ret)
        t_med = soap.text(ret, "tMed")
        return ServiceStatus(
            online=status == SERVICO_EM_OPERACAO,
            status_code=status,
            reason=reason,
            uf=self.config.uf,
            checked_at=soap.text(ret, "dhRecbto"),
            average_time=int(t_med) if t_med and t_med.isdigit() else None,
        )

    def send_event(self, env_evento: etree._Element) -> etree._Element:
        """Send a signed envEvento lote; synchronous, no polling."""
        return self._post(soap.RECEPCAO_EVENTO, env_evento, self.config.submit_retry, "retEnvEvento")

    # --- outcome reconciliation ---

    def _outcomes_from_protocols(self, batch: BatchSubmission, ret: etree._Element) -> dict[str, Outcome]:
        documents = {d.access_key: d for d in batch.documents}
        outcomes: dict[str, Outcome] = {}
        for prot in ret.findall(f"{{{NFE_NS}}}protNFe"):
            info = ProtocolInfo.from_element(prot)
            document = documents.get(info.access_key or "")
            if document is None:
                logger.warning("Lote %s: protocolo para chave desconhecida %s", batch.batch_id, info.access_key)
                continue
            if info.authorized:
                outcomes[document.access_key] = Authorized(
                    access_key=document.access_key,
                    protocol_number=info.protocol_number or "",
                    authorized_at=info.received_at or "",
                    signed_xml=build_nfe_proc(document.xml_bytes, prot),
                    status_code=info.status_code,
                    reason=info.reason,
                )
            else:
                outcomes[document.access_key] = Rejected(
                    status_code=info.status_code, reason=info.reason, access_key=document.access_key
                )

        status, reason = soap.status_of(ret)
        for key in documents:
            if key not in outcomes:
                # Lote processed but this document came back without a protocol.
                outcomes[key] = TimedOut(
                    last_status_code=status,
                    reason=f"Lote processado sem protocolo para a chave: {reason}",
                    access_key=key,
                    receipt=batch.receipt,
                )
        return outcomes

    def _timed_out(self, batch: BatchSubmission, last_status: int | None, reason: str, attempts: int) -> dict[str, Outcome]:
        return {
            key: TimedOut(
                last_status_code=last_status,
                reason=reason,
                access_key=key,
                receipt=batch.receipt,
                attempts=attempts,
            )
            for key in batch.access_keys
        }

    def poll(self, batch: BatchSubmission, *, deadline: float | None = None) -> dict[str, Outcome]:
        """Poll the receipt until a terminal answer, the attempt limit or *deadline*.

        *deadline* is a value of the gateway clock (time.monotonic by default).
        """
        batch.transition(BatchState.POLLING)
        policy = self.config.polling
        last_status: int | None = LOTE_RECEBIDO
        attempts = 0
        for attempt in range(policy.max_attempts):
            delay = policy.delay_before(attempt)
            if deadline is not None and self._clock() + delay > deadline:
                logger.warning("Lote %s: prazo do chamador esgotado após %d consulta(s)", batch.batch_id, attempts)
                batch.transition(BatchState.TIMED_OUT)
                return self._timed_out(batch, last_status, "Prazo esgotado aguardando processamento", attempts)
            self._sleep(delay)
            attempts += 1
            try:
                ret = self.query_receipt(batch.receipt or "", deadline=deadline)
            except TransportError as exc:
                logger.warning("Lote %s: consulta %d falhou: %s", batch.batch_id, attempts, exc)
                continue

            status, reason = soap.status_of(ret)
            last_status = status
            if status_info(status).is_pending:
                logger.info("Lote %s: cStat %d, aguardando (consulta %d/%d)", batch.batch_id, status, attempts, policy.max_attempts)
                continue
            if status == LOTE_PROCESSADO:
                outcomes = self._outcomes_from_protocols(batch, ret)
                any_authorized = any(isinstance(o, Authorized) for o in outcomes.values())
                batch.transition(BatchState.AUTHORIZED if any_authorized else BatchState.REJECTED)
                return outcomes
            batch.transition(BatchState.REJECTED)
            return {key: Rejected(status_code=status, reason=reason, access_key=key) for key in batch.access_keys}

        batch.transition(BatchState.TIMED_OUT)
        reason = f"Lote não processado após {attempts} consulta(s): {user_message(last_status)}"
        return self._timed_out(batch, last_status, reason, attempts)

    def process(self, batch: BatchSubmission, *, deadline: float | None = None) -> dict[str, Outcome]:
        """Submit *batch* and reconcile every document to a terminal outcome."""
        try:
            ret = self.submit_batch(batch)
        except TransportError as exc:
            if _may_have_arrived(exc):
                # The lote may have been accepted: re-query by access key, never resend.
                logger.warning("Lote %s: envio sem resposta (%s), situação incerta", batch.batch_id, type(exc.__cause__).__name__)
                return self._timed_out(batch, None, f"Envio sem resposta: {exc}", 0)
            return {key: Failed(stage="transport", error_kind=exc.kind, message=str(exc)) for key in batch.access_keys}
        except SefazResponseError as exc:
            return {key: Failed(stage="response", error_kind=exc.kind, message=str(exc)) for key in batch.access_keys}

        try:
            if batch.state is BatchState.IMMEDIATELY_AUTHORIZED:
                return self._outcomes_from_protocols(batch, ret)
            if batch.state is BatchState.REJECTED:
                status, reason = soap.status_of(ret)
                return {key: Rejected(status_code=status, reason=reason, access_key=key) for key in batch.access_keys}
            return self.poll(batch, deadline=deadline)
        except SefazResponseError as exc:
            return {key: Failed(stage="response", error_kind=exc.kind, message=str(exc)) for key in batch.access_keys}
