from __future__ import annotations

import copy
import logging
from dataclasses import dataclass

from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner

from emissor_nfe.services.exceptions import SigningError
from emissor_nfe.services.nfe_builder import CanonicalDocument
from emissor_nfe.utils.certificate import SigningIdentity

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
C14N_INCLUSIVE = "http://www.w3.org/TR/2001/REC-xml-c14n-20010315"


class NFeXMLSigner(XMLSigner):
    """XMLSigner that accepts the RSA-SHA1/SHA-1 pair the NFe 4.00 layout mandates."""

    def check_deprecated_methods(self) -> None:
        pass


@dataclass(frozen=True)
class SignedDocument:
    access_key: str
    element: etree._Element
    xml_bytes: bytes
    digest_value: str
    signature_value: str
    signer_subject: str


def _strip_whitespace(root: etree._Element) -> None:
    # Indentation between elements would change the canonical form SEFAZ computes.
    for el in root.iter():
        if el.text is not None and not el.text.strip():
            el.text = None
        if el.tail is not None and not el.tail.strip():
            el.tail = None


def sign_element(
    root: etree._Element,
    reference_id: str,
    identity: SigningIdentity,
    *,
    signature_algorithm: SignatureMethod = SignatureMethod.RSA_SHA1,
    digest_algorithm: DigestAlgorithm = DigestAlgorithm.SHA1,
    c14n_algorithm: str = C14N_INCLUSIVE,
) -> etree._Element:
    """Return a signed copy of *root* with an enveloped Signature referencing *reference_id*.

    The Signature is appended to *root*, as a sibling of the element carrying
    the Id. *root* itself is never modified.
    """
    target = root.find(f".//*[@Id='{reference_id}']")
    if target is None:
        raise SigningError(f"Elemento com Id '{reference_id}' não encontrado para assinatura")

    data = copy.deepcopy(root)
    _strip_whitespace(data)

    signer = NFeXMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=signature_algorithm,
        digest_algorithm=digest_algorithm,
        c14n_algorithm=c14n_algorithm,
    )
    signer.namespaces = {None: DS_NS}
    try:
        return signer.sign(
            data,
            key=identity.key_pem,
            cert=identity.cert_pem.decode(),
            reference_uri=f"#{reference_id}",
        )
    except Exception as exc:
        raise SigningError(f"Falha ao assinar {reference_id}: {exc}") from exc


def _signature_part(signed: etree._Element, tag: str) -> str:
    el = signed.find(f".//{{{DS_NS}}}{tag}")
    return (el.text or "").strip() if el is not None else ""


def sign_nfe(document: CanonicalDocument, identity: SigningIdentity, **algorithms) -> SignedDocument:
    """Sign the infNFe of a built document."""
    signed = sign_element(document.element, document.id, identity, **algorithms)
    logger.info("NF-e %s assinada por %s", document.access_key, identity.subject)
    return SignedDocument(
        access_key=document.access_key,
        element=signed,
        xml_bytes=etree.tostring(signed, encoding="utf-8"),
        digest_value=_signature_part(signed, "DigestValue"),
        signature_value=_signature_part(signed, "SignatureValue"),
        signer_subject=identity.subject,
    )
