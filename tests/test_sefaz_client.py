from __future__ import annotations

import dataclasses
from unittest.mock import patch

import pytest
import requests.exceptions
from lxml import etree

from emissor_nfe.config import NFE_NS, SERVICES
from emissor_nfe.models.outcomes import Authorized, Failed, Rejected, TimedOut
from emissor_nfe.services.exceptions import NFeValidationError, TransportError
from emissor_nfe.services.http_retry import RetryPolicy
from emissor_nfe.services.sefaz_client import (
    BatchState,
    BatchStateError,
    BatchSubmission,
    GatewayConfig,
    PollingPolicy,
    SefazGateway,
    build_nfe_proc,
    new_batch_id,
)
from emissor_nfe.services.xml_signer import SignedDocument
from tests.conftest import (
    ACCESS_KEY,
    PROTOCOL,
    connection_refused,
    connection_reset,
    http_response,
    prot_nfe,
    ret_cons_reci,
    ret_envi,
    soap_reply,
)

NO_RETRY = RetryPolicy(
    max_attempts=1,
    base_delay=0.0,
    max_delay=0.0,
    backoff_factor=1.0,
    jitter=0.0,
    retryable_exceptions=(requests.exceptions.ConnectionError,),
)

RECEIVED = ret_envi(103, "Lote recebido com sucesso", "<infRec><nRec>123</nRec><tMed>1</tMed></infRec>")
PROCESSING = ret_cons_reci(105, "Lote em processamento")


class FakeClock:
    """Monotonic clock advanced only by the injected sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _signed(access_key: str = ACCESS_KEY) -> SignedDocument:
    xml = (
        f'<NFe xmlns="{NFE_NS}"><infNFe Id="NFe{access_key}" versao="4.00"><ide><cUF>41</cUF></ide></infNFe></NFe>'
    ).encode()
    return SignedDocument(
        access_key=access_key,
        element=etree.fromstring(xml),
        xml_bytes=xml,
        digest_value="",
        signature_value="",
        signer_subject="CN=ACME",
    )


def _batch(**kwargs) -> BatchSubmission:
    return BatchSubmission(batch_id="261018103000001", documents=(_signed(),), **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> GatewayConfig:
    return GatewayConfig(
        uf="PR",
        environment="homologacao",
        endpoints={service: f"https://sefaz.test/{service}" for service in SERVICES},
        polling=PollingPolicy(initial_delay=1.0, interval=1.0, backoff_factor=2.0, max_delay=4.0, max_attempts=5),
        read_retry=NO_RETRY,
    )


@pytest.fixture
def gateway(config, signing_identity, clock) -> SefazGateway:
    return SefazGateway(config, signing_identity, sleep_func=clock.sleep, clock=clock)


def _responses(*contents):
    return [c if isinstance(c, Exception) else http_response(c) for c in contents]


class TestPollingPolicy:
    def test_delays(self):
        policy = PollingPolicy(initial_delay=4.0, interval=2.0, backoff_factor=1.5, max_delay=5.0, max_attempts=5)
        assert [policy.delay_before(n) for n in range(5)] == [4.0, 2.0, 3.0, 4.5, 5.0]


class TestBatchSubmission:
    def test_new_batch_id(self):
        batch_id = new_batch_id()
        assert len(batch_id) == 15
        assert batch_id.isdigit()

    def test_initial_state(self):
        batch = _batch()
        assert batch.state is BatchState.BUILT
        assert batch.history == [BatchState.BUILT]
        assert batch.access_keys == [ACCESS_KEY]

    def test_invalid_batch_id(self):
        with pytest.raises(NFeValidationError, match="idLote"):
            BatchSubmission(batch_id="ABC", documents=(_signed(),))

    def test_empty_batch(self):
        with pytest.raises(NFeValidationError):
            BatchSubmission(batch_id="1", documents=())

    def test_synchronous_single_document(self):
        with pytest.raises(NFeValidationError, match="síncrono"):
            BatchSubmission(batch_id="1", documents=(_signed(), _signed()), synchronous=True)

    def test_invalid_transition(self):
        batch = _batch()
        with pytest.raises(BatchStateError):
            batch.transition(BatchState.POLLING)

    def test_terminal_state_is_final(self):
        batch = _batch()
        batch.transition(BatchState.SUBMITTED)
        batch.transition(BatchState.REJECTED)
        with pytest.raises(BatchStateError):
            batch.transition(BatchState.POLLING)


class TestSubmission:
    @patch("emissor_nfe.services.sefaz_client.post")
    def test_post_arguments(self, mock_post, gateway, signing_identity):
        mock_post.side_effect = _responses(ret_envi(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)))
        gateway.process(_batch())

        args, kwargs = mock_post.call_args
        assert args[0] == "https://sefaz.test/autorizacao"
        assert kwargs["pkcs12_data"] == signing_identity.pkcs12_data
        assert kwargs["pkcs12_password"] == "testpass"
        assert kwargs["timeout"] == 60
        assert 'action="http://www.portalfiscal.inf.br/nfe/wsdl/NFeAutorizacao4/nfeAutorizacaoLote"' in (
            kwargs["headers"]["Content-Type"]
        )
        assert b"<idLote>261018103000001</idLote>" in kwargs["data"]
        assert b"<indSinc>0</indSinc>" in kwargs["data"]
        assert f'Id="NFe{ACCESS_KEY}"'.encode() in kwargs["data"]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_synchronous_flag(self, mock_post, gateway):
        mock_post.side_effect = _responses(ret_envi(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)))
        gateway.process(_batch(synchronous=True))
        assert b"<indSinc>1</indSinc>" in mock_post.call_args.kwargs["data"]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_compressed_submission(self, mock_post, config, signing_identity, clock):
        config = dataclasses.replace(config, compress=True)
        gw = SefazGateway(config, signing_identity, sleep_func=clock.sleep, clock=clock)
        mock_post.side_effect = _responses(ret_envi(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)))
        outcome = gw.process(_batch())[ACCESS_KEY]
        assert isinstance(outcome, Authorized)
        kwargs = mock_post.call_args.kwargs
        assert b"nfeDadosMsgZip" in kwargs["data"]
        assert "nfeAutorizacaoLoteZip" in kwargs["headers"]["Content-Type"]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_immediately_authorized(self, mock_post, gateway, clock):
        mock_post.side_effect = _responses(ret_envi(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)))
        batch = _batch()
        outcome = gateway.process(batch)[ACCESS_KEY]

        assert isinstance(outcome, Authorized)
        assert outcome.protocol_number == PROTOCOL
        assert outcome.authorized_at == "2026-10-18T10:30:05-03:00"
        assert batch.state is BatchState.IMMEDIATELY_AUTHORIZED
        assert mock_post.call_count == 1
        assert clock.sleeps == []

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_authorized_xml_is_nfe_proc(self, mock_post, gateway):
        mock_post.side_effect = _responses(ret_envi(104, "Lote processado", prot_nfe(ACCESS_KEY, 150, "Autorizado fora de prazo")))
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, Authorized)
        assert outcome.status_code == 150
        proc = etree.fromstring(outcome.signed_xml)
        assert proc.tag == f"{{{NFE_NS}}}nfeProc"
        assert [child.tag for child in proc] == [f"{{{NFE_NS}}}NFe", f"{{{NFE_NS}}}protNFe"]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_nested_rejection(self, mock_post, gateway):
        mock_post.side_effect = _responses(ret_envi(104, "Lote processado", prot_nfe(ACCESS_KEY, 110, "Uso Denegado")))
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, Rejected)
        assert outcome.status_code == 110
        assert outcome.reason == "Uso Denegado"
        assert outcome.access_key == ACCESS_KEY

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_batch_rejected(self, mock_post, gateway):
        mock_post.side_effect = _responses(ret_envi(225, "Rejeição: Falha no Schema XML da NFe"))
        batch = _batch()
        outcome = gateway.process(batch)[ACCESS_KEY]

        assert isinstance(outcome, Rejected)
        assert outcome.status_code == 225
        assert batch.state is BatchState.REJECTED
        assert mock_post.call_count == 1

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_received_without_receipt(self, mock_post, gateway):
        mock_post.side_effect = _responses(ret_envi(103, "Lote recebido com sucesso"))
        outcome = gateway.process(_batch())[ACCESS_KEY]
        assert isinstance(outcome, Failed)
        assert outcome.stage == "response"

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_read_timeout_is_not_resent(self, mock_post, gateway):
        mock_post.side_effect = requests.exceptions.ReadTimeout("read timed out")
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, TimedOut)
        assert outcome.attempts == 0
        assert outcome.last_status_code is None
        assert mock_post.call_count == 1

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_connection_errors_exhausted(self, mock_post, gateway, clock):
        mock_post.side_effect = connection_refused()
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, Failed)
        assert outcome.stage == "transport"
        assert outcome.http_status == 503
        assert mock_post.call_count == 3
        assert len(clock.sleeps) == 2

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_reset_after_send_is_not_resent(self, mock_post, gateway, clock):
        mock_post.side_effect = connection_reset()
        batch = _batch()
        outcome = gateway.process(batch)[ACCESS_KEY]

        assert isinstance(outcome, TimedOut)
        assert outcome.access_key == ACCESS_KEY
        assert outcome.last_status_code is None
        assert outcome.http_status == 202
        assert mock_post.call_count == 1
        assert clock.sleeps == []
        assert batch.state is BatchState.SUBMITTED

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_refused_then_accepted(self, mock_post, gateway, clock):
        mock_post.side_effect = [connection_refused()] + _responses(
            ret_envi(104, "Lote processado", prot_nfe(ACCESS_KEY, 100))
        )
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, Authorized)
        assert mock_post.call_count == 2
        assert len(clock.sleeps) == 1

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_tls_failure_is_transport_failure(self, mock_post, gateway):
        mock_post.side_effect = requests.exceptions.SSLError("certificate verify failed")
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, Failed)
        assert outcome.stage == "transport"
        assert mock_post.call_count == 1

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_event_not_resent_after_reset(self, mock_post, gateway):
        mock_post.side_effect = connection_reset()
        env_evento = etree.fromstring(f'<envEvento xmlns="{NFE_NS}" versao="1.00"><idLote>1</idLote></envEvento>')
        with pytest.raises(TransportError, match="RecepcaoEvento"):
            gateway.send_event(env_evento)
        assert mock_post.call_count == 1

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_http_error(self, mock_post, gateway):
        mock_post.side_effect = [http_response(b"Internal Server Error", 500)]
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, Failed)
        assert outcome.stage == "transport"
        assert "500" in outcome.message

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_unparseable_reply(self, mock_post, gateway):
        mock_post.side_effect = [http_response(b"<html>oops")]
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, Failed)
        assert outcome.stage == "response"
        assert outcome.http_status == 502


class TestPolling:
    @patch("emissor_nfe.services.sefaz_client.post")
    def test_authorized_on_fifth_poll(self, mock_post, gateway, clock):
        mock_post.side_effect = _responses(
            RECEIVED,
            PROCESSING,
            PROCESSING,
            PROCESSING,
            PROCESSING,
            ret_cons_reci(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)),
        )
        batch = _batch()
        outcome = gateway.process(batch)[ACCESS_KEY]

        assert isinstance(outcome, Authorized)
        assert outcome.protocol_number == PROTOCOL
        assert mock_post.call_count == 6
        assert clock.sleeps == [1.0, 1.0, 2.0, 4.0, 4.0]
        assert batch.receipt == "123"
        assert batch.history == [
            BatchState.BUILT,
            BatchState.SUBMITTED,
            BatchState.BATCH_RECEIVED,
            BatchState.POLLING,
            BatchState.AUTHORIZED,
        ]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_poll_queries_receipt(self, mock_post, gateway):
        mock_post.side_effect = _responses(RECEIVED, ret_cons_reci(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)))
        gateway.process(_batch())

        args, kwargs = mock_post.call_args
        assert args[0] == "https://sefaz.test/ret_autorizacao"
        assert b"<nRec>123</nRec>" in kwargs["data"]
        assert b"<tpAmb>2</tpAmb>" in kwargs["data"]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_exactly_max_attempts(self, mock_post, gateway, clock):
        mock_post.side_effect = _responses(RECEIVED, *[PROCESSING] * 10)
        batch = _batch()
        outcome = gateway.process(batch)[ACCESS_KEY]

        assert isinstance(outcome, TimedOut)
        assert outcome.attempts == 5
        assert outcome.last_status_code == 105
        assert outcome.receipt == "123"
        assert mock_post.call_count == 6
        assert batch.state is BatchState.TIMED_OUT

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_deadline_stops_before_max_attempts(self, mock_post, gateway, clock):
        mock_post.side_effect = _responses(RECEIVED, *[PROCESSING] * 10)
        outcome = gateway.process(_batch(), deadline=2.5)[ACCESS_KEY]

        assert isinstance(outcome, TimedOut)
        assert outcome.attempts == 2
        assert mock_post.call_count == 3
        assert clock.now <= 2.5

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_deadline_bounds_read_retries(self, mock_post, config, signing_identity, clock):
        read_retry = RetryPolicy(
            max_attempts=4,
            base_delay=1.0,
            max_delay=15.0,
            backoff_factor=2.0,
            jitter=0.0,
            retryable_exceptions=(requests.exceptions.ConnectionError,),
        )
        gw = SefazGateway(
            dataclasses.replace(config, read_retry=read_retry),
            signing_identity,
            sleep_func=clock.sleep,
            clock=clock,
        )
        mock_post.side_effect = [http_response(RECEIVED)] + [connection_reset()] * 10
        outcome = gw.process(_batch(), deadline=3.0)[ACCESS_KEY]

        assert isinstance(outcome, TimedOut)
        assert outcome.attempts == 2
        assert clock.now <= 3.0
        assert clock.sleeps == [1.0, 1.0, 1.0]
        # request timeouts shrink with the time left, never below one second
        timeouts = [c.kwargs["timeout"] for c in mock_post.call_args_list]
        assert timeouts == [60, 2.0, 1.0, 1.0]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_transport_error_counts_as_attempt(self, mock_post, gateway):
        mock_post.side_effect = _responses(
            RECEIVED,
            requests.exceptions.ConnectionError("reset"),
            ret_cons_reci(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)),
        )
        outcome = gateway.process(_batch())[ACCESS_KEY]
        assert isinstance(outcome, Authorized)
        assert mock_post.call_count == 3

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_received_again_keeps_polling(self, mock_post, gateway):
        mock_post.side_effect = _responses(
            RECEIVED,
            ret_cons_reci(103, "Lote recebido com sucesso"),
            ret_cons_reci(104, "Lote processado", prot_nfe(ACCESS_KEY, 100)),
        )
        outcome = gateway.process(_batch())[ACCESS_KEY]
        assert isinstance(outcome, Authorized)
        assert mock_post.call_count == 3

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_timeout_reason_explains_last_status(self, mock_post, gateway):
        mock_post.side_effect = _responses(RECEIVED, *[PROCESSING] * 5)
        outcome = gateway.process(_batch())[ACCESS_KEY]
        assert isinstance(outcome, TimedOut)
        assert outcome.reason == "Lote não processado após 5 consulta(s): Lote em processamento, aguarde"

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_poll_rejection(self, mock_post, gateway):
        mock_post.side_effect = _responses(RECEIVED, ret_cons_reci(106, "Lote não localizado"))
        batch = _batch()
        outcome = gateway.process(batch)[ACCESS_KEY]

        assert isinstance(outcome, Rejected)
        assert outcome.status_code == 106
        assert batch.state is BatchState.REJECTED

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_processed_without_protocol(self, mock_post, gateway):
        mock_post.side_effect = _responses(RECEIVED, ret_cons_reci(104, "Lote processado"))
        outcome = gateway.process(_batch())[ACCESS_KEY]

        assert isinstance(outcome, TimedOut)
        assert outcome.last_status_code == 104

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_rejected_protocol_after_polling(self, mock_post, gateway):
        mock_post.side_effect = _responses(
            RECEIVED, ret_cons_reci(104, "Lote processado", prot_nfe(ACCESS_KEY, 539, "Duplicidade de NF-e"))
        )
        batch = _batch()
        outcome = gateway.process(batch)[ACCESS_KEY]

        assert isinstance(outcome, Rejected)
        assert outcome.status_code == 539
        assert batch.state is BatchState.REJECTED


class TestOtherServices:
    @patch("emissor_nfe.services.sefaz_client.post")
    def test_service_status_online(self, mock_post, gateway):
        mock_post.side_effect = _responses(
            soap_reply(
                f'<retConsStatServ xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb><cStat>107</cStat>'
                "<xMotivo>Serviço em Operação</xMotivo><cUF>41</cUF>"
                "<dhRecbto>2026-10-18T10:00:00-03:00</dhRecbto><tMed>1</tMed></retConsStatServ>"
            )
        )
        status = gateway.service_status()

        assert status.online
        assert status.status_code == 107
        assert status.average_time == 1
        assert status.uf == "PR"
        args, kwargs = mock_post.call_args
        assert args[0] == "https://sefaz.test/status_servico"
        assert b"<cUF>41</cUF>" in kwargs["data"]
        assert b"<xServ>STATUS</xServ>" in kwargs["data"]

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_service_status_offline(self, mock_post, gateway):
        mock_post.side_effect = _responses(
            soap_reply(
                f'<retConsStatServ xmlns="{NFE_NS}" versao="4.00"><cStat>108</cStat>'
                "<xMotivo>Serviço Paralisado Momentaneamente</xMotivo></retConsStatServ>"
            )
        )
        status = gateway.service_status()
        assert not status.online
        assert status.http_status == 503

    @patch("emissor_nfe.services.sefaz_client.post")
    def test_query_protocol_retries_reads(self, mock_post, config, signing_identity, clock):
        read_retry = RetryPolicy(
            max_attempts=2,
            base_delay=0.5,
            max_delay=1.0,
            backoff_factor=2.0,
            jitter=0.0,
            retryable_exceptions=(requests.exceptions.Timeout,),
        )
        gw = SefazGateway(
            dataclasses.replace(config, read_retry=read_retry),
            signing_identity,
            sleep_func=clock.sleep,
            clock=clock,
        )
        mock_post.side_effect = _responses(
            requests.exceptions.ReadTimeout("slow"),
            soap_reply(
                f'<retConsSitNFe xmlns="{NFE_NS}" versao="4.00"><cStat>100</cStat>'
                f"<xMotivo>Autorizado o uso da NF-e</xMotivo><chNFe>{ACCESS_KEY}</chNFe></retConsSitNFe>"
            ),
        )
        ret = gw.query_protocol(ACCESS_KEY)
        assert ret.findtext(f"{{{NFE_NS}}}chNFe") == ACCESS_KEY
        assert mock_post.call_count == 2
        assert clock.sleeps == [0.5]
        assert f"<chNFe>{ACCESS_KEY}</chNFe>".encode() in mock_post.call_args.kwargs["data"]


def test_build_nfe_proc():
    prot = etree.fromstring(f'<protNFe xmlns="{NFE_NS}" versao="4.00"><infProt><cStat>100</cStat></infProt></protNFe>')
    proc = etree.fromstring(build_nfe_proc(_signed().xml_bytes, prot))
    assert proc.get("versao") == "4.00"
    assert proc.find(f"{{{NFE_NS}}}NFe/{{{NFE_NS}}}infNFe").get("Id") == f"NFe{ACCESS_KEY}"
    assert proc.find(f"{{{NFE_NS}}}protNFe/{{{NFE_NS}}}infProt/{{{NFE_NS}}}cStat").text == "100"
