from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from http.client import RemoteDisconnected
from unittest.mock import MagicMock

import pytest
import requests.exceptions
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree
from urllib3.exceptions import MaxRetryError, NewConnectionError, ProtocolError

from emissor_nfe.config import BRT, NFE_NS
from emissor_nfe.models.emitter import Emitter
from emissor_nfe.models.invoice import InvoiceDraft, LineItem
from emissor_nfe.models.recipient import Recipient
from emissor_nfe.services.soap import SOAP12_NS
from emissor_nfe.utils.certificate import load_certificate

EMITTER_CNPJ = "11222333000181"
RECIPIENT_CNPJ = "12345678000195"
RECIPIENT_CPF = "52998224725"

# PR, 2026-10, CNPJ above, mod 55, série 1, nNF 1, tpEmis 1, cNF 12345678
ACCESS_KEY = "41261011222333000181550010000000011123456788"
EMITTED_AT = datetime(2026, 10, 18, 10, 30, 0, tzinfo=BRT)
PROTOCOL = "141260000012345"


def nfe(tag: str) -> str:
    """Clark-notation tag in the NFe namespace."""
    return f"{{{NFE_NS}}}{tag}"


def xml_text(el: etree._Element, path: str) -> str | None:
    """Extract text from an element by a slash-separated path of NFe tags."""
    found = el.find("/".join(nfe(p) for p in path.split("/")))
    return found.text if found is not None else None


def soap_reply(body: str) -> bytes:
    """Wrap a SEFAZ result XML fragment in a SOAP 1.2 envelope."""
    return (
        f'<?xml version="1.0" encoding="utf-8"?>'
        f'<soap:Envelope xmlns:soap="{SOAP12_NS}"><soap:Body>'
        f'<nfeResultMsg xmlns="http://www.portalfiscal.inf.br/nfe/wsdl/NFeAutorizacao4">'
        f"{body}</nfeResultMsg></soap:Body></soap:Envelope>"
    ).encode()


def http_response(content: bytes, status_code: int = 200) -> MagicMock:
    resp = MagicMock()
    resp.ok = 200 <= status_code < 300
    resp.status_code = status_code
    resp.content = content
    resp.text = content.decode()
    return resp


def connection_refused() -> requests.exceptions.ConnectionError:
    """What requests raises when the TCP connect fails: nothing reached the server."""
    reason = NewConnectionError(None, "Failed to establish a new connection: [Errno 111] Connection refused")
    return requests.exceptions.ConnectionError(MaxRetryError(None, "/ws/nfeautorizacao4.asmx", reason))


def connection_reset() -> requests.exceptions.ConnectionError:
    """The peer dropped the connection after the request was written."""
    return requests.exceptions.ConnectionError(
        ProtocolError("Connection aborted.", RemoteDisconnected("Remote end closed connection without response"))
    )


def prot_nfe(access_key: str, status: int, reason: str = "Autorizado o uso da NF-e") -> str:
    return (
        f'<protNFe versao="4.00"><infProt><tpAmb>2</tpAmb><verAplic>SVRS</verAplic>'
        f"<chNFe>{access_key}</chNFe><dhRecbto>2026-10-18T10:30:05-03:00</dhRecbto>"
        f"<nProt>{PROTOCOL}</nProt><digVal>abc=</digVal>"
        f"<cStat>{status}</cStat><xMotivo>{reason}</xMotivo></infProt></protNFe>"
    )


def ret_envi(status: int, reason: str, inner: str = "") -> bytes:
    return soap_reply(
        f'<retEnviNFe xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb>'
        f"<cStat>{status}</cStat><xMotivo>{reason}</xMotivo><cUF>41</cUF>{inner}</retEnviNFe>"
    )


def ret_cons_reci(status: int, reason: str, inner: str = "") -> bytes:
    return soap_reply(
        f'<retConsReciNFe xmlns="{NFE_NS}" versao="4.00"><tpAmb>2</tpAmb><nRec>123</nRec>'
        f"<cStat>{status}</cStat><xMotivo>{reason}</xMotivo><cUF>41</cUF>{inner}</retConsReciNFe>"
    )


# --- Emitter / recipient / draft fixtures ---


@pytest.fixture
def emitter_dict() -> dict:
    return {
        "cnpj": EMITTER_CNPJ,
        "razao_social": "ACME COMERCIO LTDA",
        "nome_fantasia": "ACME",
        "ie": "9012345678",
        "regime": "simples_nacional",
        "email": "fiscal@acme.com.br",
        "endereco": {
            "logradouro": "RUA DAS FLORES",
            "numero": "100",
            "bairro": "CENTRO",
            "cod_municipio": "4106902",
            "municipio": "CURITIBA",
            "uf": "PR",
            "cep": "80010-000",
            "fone": "(41) 3333-4444",
        },
    }


@pytest.fixture
def emitter(emitter_dict: dict) -> Emitter:
    return Emitter.from_dict(emitter_dict)


@pytest.fixture
def lucro_real_emitter(emitter_dict: dict) -> Emitter:
    return Emitter.from_dict({**emitter_dict, "regime": "lucro_real"})


@pytest.fixture
def recipient_dict() -> dict:
    return {
        "documento": RECIPIENT_CNPJ,
        "nome": "CLIENTE EXEMPLO SA",
        "ie": "1234567890",
        "endereco": {
            "logradouro": "AV PAULISTA",
            "numero": "1000",
            "bairro": "BELA VISTA",
            "cod_municipio": "3550308",
            "municipio": "SAO PAULO",
            "uf": "SP",
            "cep": "01310100",
        },
    }


@pytest.fixture
def recipient(recipient_dict: dict) -> Recipient:
    return Recipient.from_dict(recipient_dict)


@pytest.fixture
def line_item() -> LineItem:
    return LineItem(
        codigo="P001",
        descricao="PRODUTO TESTE",
        ncm="84713012",
        cfop="6102",
        quantidade=Decimal("2"),
        valor_unitario=Decimal("10.00"),
    )


@pytest.fixture
def draft(emitter: Emitter, recipient: Recipient, line_item: LineItem) -> InvoiceDraft:
    return InvoiceDraft(emitter=emitter, recipient=recipient, itens=(line_item,), serie=1, numero=1)


@pytest.fixture
def nota_dict(recipient_dict: dict) -> dict:
    return {
        "ambiente": "homologacao",
        "serie": 1,
        "destinatario": recipient_dict,
        "itens": [
            {
                "codigo": "P001",
                "descricao": "PRODUTO TESTE",
                "ncm": "84713012",
                "cfop": "6102",
                "quantidade": "2",
                "valor_unitario": "10.00",
            }
        ],
    }


# --- Certificate / PFX fixtures ---


def _make_cert(common_name: str, not_before: datetime, not_after: datetime):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ICP-Brasil"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    return key, cert


def _pfx_bytes(key, cert, password: bytes) -> bytes:
    return pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )


@pytest.fixture(scope="session")
def test_key_and_cert():
    now = datetime.now(UTC)
    return _make_cert(f"ACME COMERCIO LTDA:{EMITTER_CNPJ}", now - timedelta(days=1), now + timedelta(days=365))


@pytest.fixture(scope="session")
def pfx_data(test_key_and_cert) -> bytes:
    key, cert = test_key_and_cert
    return _pfx_bytes(key, cert, b"testpass")


@pytest.fixture(scope="session")
def expired_pfx_data() -> bytes:
    now = datetime.now(UTC)
    key, cert = _make_cert("EXPIRADO LTDA", now - timedelta(days=400), now - timedelta(days=35))
    return _pfx_bytes(key, cert, b"testpass")


@pytest.fixture
def test_pfx(tmp_path, pfx_data):
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), "testpass"


@pytest.fixture(scope="session")
def signing_identity(pfx_data):
    return load_certificate(pfx_data, "testpass")


# --- Config dir fixture ---


@pytest.fixture
def config_dir(tmp_path, emitter_dict):
    import yaml

    cfg = tmp_path / "config"
    cfg.mkdir()
    (cfg / "emitter.yaml").write_text(yaml.dump(emitter_dict))
    return cfg
