from __future__ import annotations

import base64
import gzip

from lxml import etree


def encode_message(message: etree._Element) -> str:
    """GZip compress and Base64 encode a SEFAZ message for nfeDadosMsgZip.

    The message is serialized without an XML declaration, as it is embedded
    in the SOAP body once decompressed.
    """
    xml_bytes = etree.tostring(message, encoding="utf-8")
    compressed = gzip.compress(xml_bytes, mtime=0)
    return base64.b64encode(compressed).decode("ascii")
