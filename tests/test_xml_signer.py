from __future__ import annotations

from unittest.mock import patch

import pytest
from lxml import etree
from signxml.algorithms import DigestAlgorithm, SignatureMethod

from emissor_nfe.config import NFE_NS
from emissor_nfe.services.exceptions import SigningError
from emissor_nfe.services.nfe_builder import build_nfe
from emissor_nfe.services.xml_signer import C14N_INCLUSIVE, DS_NS, sign_element, sign_nfe
from tests.conftest import ACCESS_KEY, EMITTED_AT


def _make_nfe(nfe_id: str = f"NFe{ACCESS_KEY}") -> etree._Element:
    """Build a minimal NFe element for signing tests."""
    root = etree.Element(f"{{{NFE_NS}}}NFe", nsmap={None: NFE_NS})
    inf = etree.SubElement(root, f"{{{NFE_NS}}}infNFe")
    inf.set("Id", nfe_id)
    inf.set("versao", "4.00")
    etree.SubElement(inf, f"{{{NFE_NS}}}tpAmb").text = "2"
    return root


def _with_signature(root: etree._Element) -> etree._Element:
    sig = etree.SubElement(root, f"{{{DS_NS}}}Signature")
    etree.SubElement(etree.SubElement(sig, f"{{{DS_NS}}}SignedInfo"), f"{{{DS_NS}}}DigestValue").text = "ZGlnZXN0"
    etree.SubElement(sig, f"{{{DS_NS}}}SignatureValue").text = "c2lnbmF0dXJl"
    return root


class TestSignElement:
    @patch("emissor_nfe.services.xml_signer.NFeXMLSigner")
    def test_reference_uri_matches_id(self, mock_signer_cls, signing_identity):
        root = _make_nfe()
        mock_signer_cls.return_value.sign.return_value = root

        sign_element(root, f"NFe{ACCESS_KEY}", signing_identity)
        _, kwargs = mock_signer_cls.return_value.sign.call_args
        assert kwargs["reference_uri"] == f"#NFe{ACCESS_KEY}"
        assert kwargs["key"] == signing_identity.key_pem
        assert kwargs["cert"] == signing_identity.cert_pem.decode()

    @patch("emissor_nfe.services.xml_signer.NFeXMLSigner")
    def test_default_algorithms(self, mock_signer_cls, signing_identity):
        root = _make_nfe()
        mock_signer_cls.return_value.sign.return_value = root

        sign_element(root, f"NFe{ACCESS_KEY}", signing_identity)
        _, kwargs = mock_signer_cls.call_args
        assert kwargs["signature_algorithm"] is SignatureMethod.RSA_SHA1
        assert kwargs["digest_algorithm"] is DigestAlgorithm.SHA1
        assert kwargs["c14n_algorithm"] == C14N_INCLUSIVE
        assert mock_signer_cls.return_value.namespaces == {None: DS_NS}

    @patch("emissor_nfe.services.xml_signer.NFeXMLSigner")
    def test_signs_a_copy(self, mock_signer_cls, signing_identity):
        root = _make_nfe()
        mock_signer_cls.return_value.sign.side_effect = lambda data, **kw: data

        signed = sign_element(root, f"NFe{ACCESS_KEY}", signing_identity)
        assert signed is not root
        assert etree.tostring(signed) == etree.tostring(root)

    @patch("emissor_nfe.services.xml_signer.NFeXMLSigner")
    def test_strips_indentation(self, mock_signer_cls, signing_identity):
        root = etree.fromstring(etree.tostring(_make_nfe(), pretty_print=True))
        mock_signer_cls.return_value.sign.side_effect = lambda data, **kw: data

        signed = sign_element(root, f"NFe{ACCESS_KEY}", signing_identity)
        assert b"\n" not in etree.tostring(signed)

    def test_missing_id(self, signing_identity):
        with pytest.raises(SigningError, match="não encontrado"):
            sign_element(_make_nfe(), "NFe000", signing_identity)

    @patch("emissor_nfe.services.xml_signer.NFeXMLSigner")
    def test_wraps_signer_failure(self, mock_signer_cls, signing_identity):
        mock_signer_cls.return_value.sign.side_effect = ValueError("bad key")
        with pytest.raises(SigningError, match="bad key"):
            sign_element(_make_nfe(), f"NFe{ACCESS_KEY}", signing_identity)


class TestSignNfe:
    @patch("emissor_nfe.services.xml_signer.NFeXMLSigner")
    def test_signed_document(self, mock_signer_cls, draft, signing_identity):
        document = build_nfe(draft, codigo_numerico="12345678", emitted_at=EMITTED_AT)
        mock_signer_cls.return_value.sign.side_effect = lambda data, **kw: _with_signature(data)

        signed = sign_nfe(document, signing_identity)
        assert signed.access_key == ACCESS_KEY
        assert signed.digest_value == "ZGlnZXN0"
        assert signed.signature_value == "c2lnbmF0dXJl"
        assert signed.signer_subject == signing_identity.subject
        assert b"Signature" in signed.xml_bytes
        # the built document stays unsigned
        assert document.element.find(f"{{{DS_NS}}}Signature") is None

    def test_real_signature_sha256(self, draft, signing_identity):
        document = build_nfe(draft, codigo_numerico="12345678", emitted_at=EMITTED_AT)
        signed = sign_nfe(
            document,
            signing_identity,
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
        )
        sig = signed.element.find(f"{{{DS_NS}}}Signature")
        assert sig is not None
        # Signature is a sibling of infNFe, not inside it
        assert signed.element.find(f"{{{NFE_NS}}}infNFe/{{{DS_NS}}}Signature") is None
        ref = sig.find(f"{{{DS_NS}}}SignedInfo/{{{DS_NS}}}Reference")
        assert ref.get("URI") == f"#NFe{ACCESS_KEY}"
        method = sig.find(f"{{{DS_NS}}}SignedInfo/{{{DS_NS}}}SignatureMethod")
        assert method.get("Algorithm") == SignatureMethod.RSA_SHA256.value
        assert signed.digest_value
        assert signed.signature_value
        assert sig.find(f".//{{{DS_NS}}}X509Certificate") is not None
