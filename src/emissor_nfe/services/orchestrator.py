from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

from lxml import etree

from emissor_nfe.models.invoice import InvoiceDraft
from emissor_nfe.models.outcomes import (
    Authorized,
    Cancelled,
    CancellationRequest,
    CertificateData,
    CorrectionRegistered,
    CorrectionRequest,
    Failed,
    Rejected,
    ServiceStatus,
    TimedOut,
)
from emissor_nfe.services import soap
from emissor_nfe.services.events import EventProcessor, check_cancellation, check_correction
from emissor_nfe.services.exceptions import (
    CertificateError,
    InvalidAccessKeyInput,
    NFeError,
    NFeValidationError,
    SefazResponseError,
    SigningError,
    TransportError,
)
from emissor_nfe.services.nfe_builder import build_nfe
from emissor_nfe.services.sefaz_client import (
    AUTORIZADO,
    AUTORIZADO_FORA_DE_PRAZO,
    BatchSubmission,
    GatewayConfig,
    PollingPolicy,
    SefazGateway,
    build_nfe_proc,
    new_batch_id,
)
from emissor_nfe.services.tax_rules import resolve_draft_taxes
from emissor_nfe.services.xml_signer import sign_nfe
from emissor_nfe.utils.certificate import SigningIdentity, load_certificate
from emissor_nfe.utils.access_key import parse_access_key
from emissor_nfe.utils.uf import uf_from_code

logger = logging.getLogger(__name__)


def _key_uf(access_key: str) -> str:
    """Authorizer UF from the cUF of a valid access key."""
    c_uf = parse_access_key(access_key).c_uf
    try:
        return uf_from_code(c_uf)
    except ValueError as exc:
        raise InvalidAccessKeyInput(str(exc)) from None


def _failure(exc: NFeError) -> Failed:
    """Map a classified exception to the Failed outcome of its stage."""
    if isinstance(exc, NFeValidationError):
        return Failed(stage="validation", error_kind=exc.kind, message=str(exc))
    if isinstance(exc, CertificateError):
        return Failed(stage="certificate", error_kind=exc.error_kind.value, message=str(exc))
    if isinstance(exc, SigningError):
        return Failed(stage="signing", error_kind=exc.kind, message=str(exc))
    if isinstance(exc, TransportError):
        return Failed(stage="transport", error_kind=exc.kind, message=str(exc))
    if isinstance(exc, SefazResponseError):
        return Failed(stage="response", error_kind=exc.kind, message=str(exc))
    return Failed(stage="internal", error_kind=exc.kind, message=str(exc))


class AuthorizationOrchestrator:
    """Public entry points: authorize, cancel, correct, query and status.

    Every call returns an outcome value; classified exceptions from any
    stage are mapped to Failed and never escape.
    """

    def __init__(
        self,
        *,
        config_factory: Callable[..., GatewayConfig] = GatewayConfig.for_emitter,
        polling: PollingPolicy | None = None,
        compress: bool = False,
        synchronous: bool = False,
        sleep_func: Callable[[float], object] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        sign_options: dict | None = None,
    ) -> None:
        self._config_factory = config_factory
        self._polling = polling
        self._compress = compress
        self._synchronous = synchronous
        self._sleep = sleep_func
        self._clock = clock
        self._sign_options = sign_options or {}

    def _identity(self, certificate: SigningIdentity | CertificateData) -> SigningIdentity:
        if isinstance(certificate, SigningIdentity):
            return certificate
        return load_certificate(certificate.pkcs12_data, certificate.password)

    def gateway(self, uf: str, environment: str, identity: SigningIdentity) -> SefazGateway:
        """A fresh gateway for one call."""
        options: dict = {"compress": self._compress}
        if self._polling is not None:
            options["polling"] = self._polling
        config = self._config_factory(uf, environment, **options)
        return SefazGateway(config, identity, sleep_func=self._sleep, clock=self._clock)

    def authorize(
        self,
        draft: InvoiceDraft,
        certificate: SigningIdentity | CertificateData,
        *,
        deadline: float | None = None,
        codigo_numerico: str | None = None,
        emitted_at: datetime | None = None,
    ) -> Authorized | Rejected | TimedOut | Failed:
        """Resolve taxes, build, sign, submit and reconcile one NF-e."""
        try:
            taxes = resolve_draft_taxes(draft)
            document = build_nfe(draft, taxes, codigo_numerico=codigo_numerico, emitted_at=emitted_at)
            identity = self._identity(certificate)
            signed = sign_nfe(document, identity, **self._sign_options)
            gateway = self.gateway(draft.emitter.uf, draft.environment, identity)
            batch = BatchSubmission(
                batch_id=new_batch_id(), documents=(signed,), synchronous=self._synchronous
            )
            outcome = gateway.process(batch, deadline=deadline)[signed.access_key]
        except NFeError as exc:
            logger.warning("Autorização falhou: %s", exc)
            return _failure(exc)
        logger.info("NF-e %s: %s", signed.access_key, outcome.kind)
        return outcome

    def cancel(self, request: CancellationRequest) -> Cancelled | Rejected | Failed:
        """Cancel an authorized NF-e through a 110111 event."""
        try:
            check_cancellation(
                request.access_key, request.protocol_number, request.justification, request.sequence
            )
            identity = self._identity(request.certificate)
            gateway = self.gateway(_key_uf(request.access_key), request.environment, identity)
            return EventProcessor(gateway, **self._sign_options).cancel(
                request.access_key,
                request.protocol_number,
                request.justification,
                request.sequence,
            )
        except NFeError as exc:
            logger.warning("Cancelamento falhou: %s", exc)
            return _failure(exc)

    def correct(self, request: CorrectionRequest) -> CorrectionRegistered | Rejected | Failed:
        """Register a carta de correção (110110)."""
        try:
            check_correction(request.access_key, request.correction, request.sequence)
            identity = self._identity(request.certificate)
            gateway = self.gateway(_key_uf(request.access_key), request.environment, identity)
            return EventProcessor(gateway, **self._sign_options).correct(
                request.access_key, request.correction, request.sequence
            )
        except NFeError as exc:
            logger.warning("Carta de correção falhou: %s", exc)
            return _failure(exc)

    def query(
        self,
        access_key: str,
        certificate: SigningIdentity | CertificateData,
        environment: str,
        *,
        signed_xml: bytes | None = None,
    ) -> Authorized | Rejected | Failed:
        """Re-query an NF-e by access key, e.g. after a TimedOut outcome.

        With *signed_xml* (the NFe sent earlier) an authorized answer carries
        the full nfeProc; otherwise only the protNFe.
        """
        try:
            uf = _key_uf(access_key)
            identity = self._identity(certificate)
            gateway = self.gateway(uf, environment, identity)
            ret = gateway.query_protocol(access_key)
            status, reason = soap.status_of(ret)
            prot = soap.find(ret, "protNFe")
        except NFeError as exc:
            return _failure(exc)

        if status in (AUTORIZADO, AUTORIZADO_FORA_DE_PRAZO) and prot is not None:
            xml = (
                build_nfe_proc(signed_xml, prot)
                if signed_xml
                else etree.tostring(prot, xml_declaration=True, encoding="utf-8")
            )
            return Authorized(
                access_key=access_key,
                protocol_number=soap.text(prot, "infProt/nProt") or "",
                authorized_at=soap.text(prot, "infProt/dhRecbto") or "",
                signed_xml=xml,
                status_code=status,
                reason=reason,
            )
        return Rejected(status_code=status, reason=reason, access_key=access_key)

    def status(
        self,
        uf: str,
        environment: str,
        certificate: SigningIdentity | CertificateData,
    ) -> ServiceStatus | Failed:
        try:
            identity = self._identity(certificate)
            return self.gateway(uf, environment, identity).service_status()
        except NFeError as exc:
            return _failure(exc)
