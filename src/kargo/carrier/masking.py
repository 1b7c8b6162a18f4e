"""Credential and PII masking for anything that leaves the process in a log line."""

import re
from typing import Any

from lxml import etree

CREDENTIAL_FIELDS = {
    "wsUserName",
    "wsPassword",
    "userName",
    "password",
}

PII_FIELDS = {
    "receiverCustName",
    "receiverAddress",
    "cityName",
    "townName",
    "receiverPhone1",
    "receiverPhone2",
    "receiverPhone3",
    "emailAddress",
    "customerName",
    "address",
    "phone",
    "email",
}

MASK = "***"


def mask_value(field: str, value: Any) -> Any:
    if value is None or value == "":
        return value
    if field in CREDENTIAL_FIELDS:
        return MASK
    if field in PII_FIELDS:
        text = str(value)
        if "phone" in field.lower():
            digits = re.sub(r"\D", "", text)
            return f"{MASK}{digits[-2:]}" if len(digits) > 2 else MASK
        return f"{text[:1]}{MASK}"
    return value


def mask_payload(payload: Any) -> Any:
    """Return a deep copy of a request/response structure with sensitive fields masked."""
    if isinstance(payload, dict):
        return {
            key: mask_value(key, value) if key in CREDENTIAL_FIELDS | PII_FIELDS and not isinstance(value, (dict, list))
            else mask_payload(value)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [mask_payload(item) for item in payload]
    return payload


def mask_envelope(envelope: etree._Element | bytes | str) -> str:
    """Serialize a SOAP envelope with sensitive element texts masked."""
    if isinstance(envelope, (bytes, str)):
        raw = envelope.encode("utf-8") if isinstance(envelope, str) else envelope
        root = etree.fromstring(raw)
    else:
        root = etree.fromstring(etree.tostring(envelope))

    for element in root.iter():
        if not isinstance(element.tag, str):
            continue
        name = etree.QName(element).localname
        if element.text and name in CREDENTIAL_FIELDS | PII_FIELDS:
            element.text = str(mask_value(name, element.text))
    return etree.tostring(root, encoding="unicode")
