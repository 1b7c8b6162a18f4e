import asyncio
import logging
import re
from typing import Any, Awaitable, Callable

from kargo.carrier.responses import as_list, first_value, flag, unwrap
from kargo.carrier.transport import LIST_DOCUMENTS, CarrierService, CarrierTransport
from kargo.config import CredentialProfile
from kargo.errors import AuthenticationError, CarrierConnectionError, CarrierTransportError, MalformedResponseError
from kargo.models.shipment import CarrierDocument, TrackingLookup

logger = logging.getLogger(__name__)

REPORT_RESULT_PATHS = (
    ("ShippingDataResponseVO",),
    ("listInvDocumentInterfaceByReferenceResponse", "ShippingDataResponseVO"),
    ("listInvDocumentInterfaceByReferenceResponse", "return"),
    ("listInvDocumentInterfaceByReferenceReturn",),
    ("return",),
    ("result",),
)
DOCUMENT_LIST_KEYS = (
    "documentDetailVO",
    "shippingDataDetailVOArray",
    "shippingDataDetailVO",
    "shippingDataV2DetailVOArray",
    "shippingDataV2DetailVO",
)

BARCODE_FIELDS = ("barcodeStringValue", "ORDER_SEQ", "orderSeq", "barcode", "barcodeNo", "trackingNumber", "trackingNo")
DOC_ID_FIELDS = ("docId", "DOC_ID", "documentId", "DOCUMENT_ID")
DOC_NUMBER_FIELDS = ("docNumber", "DOC_NUMBER")
DOC_TYPE_FIELDS = ("documentType", "DOCUMENT_TYPE", "docType", "DOC_TYPE")
LABEL_URL_FIELDS = ("labelUrl", "labelURL", "label_url")

COLLECTION_DOCUMENT = re.compile(r"collection|payment|tahsilat|(?<![a-z])cod(?![a-z])", re.IGNORECASE)
AUTH_FAILURE = re.compile(
    r"\bauth(entication|orization)?\b|unauthori[sz]ed|kullan[ıi]c[ıi] ad[ıi] bo[şs]|[şs]ifre(si)? bo[şs]"
    r"|yetkisiz|invalid user",
    re.IGNORECASE,
)

REFERENCE_FIELD = "INVOICE_KEY"
DOCUMENT_ID_FIELD = "DOCUMENT_ID"

Variant = tuple[str, dict[str, Any]]


def field_lookup_variants(
    field_name: str, value: str, profile: CredentialProfile, inv_cust_id: str = ""
) -> list[Variant]:
    """fieldName/fieldValueArray requests, the values as a bare array and wrapped in <string> items."""
    base = {
        "userName": profile.username,
        "password": profile.password,
        "language": profile.language,
        "fieldName": field_name,
    }
    variants = []
    for shape, values in (("flat", [value]), ("wrapped", {"string": [value]})):
        params = {**base, "fieldValueArray": values}
        if inv_cust_id:
            params["custParamsVO"] = {"invCustIdArray": [inv_cust_id]}
        variants.append((f"fieldValueArray/{shape}", params))
    return variants


def lookup_variants(
    shipment_key: str,
    profile: CredentialProfile,
    reference_field: str = REFERENCE_FIELD,
    inv_cust_id: str = "",
) -> list[Variant]:
    """Request shapes for looking up documents by shipment key, in the order they are tried.

    The reporting service has taken the key either inside a ShippingDataRequestVO
    as invCustIdArray, or as a fieldName/fieldValueArray pair, each with the
    array flat or wrapped.
    """
    request_vo = {
        "wsUserName": profile.username,
        "wsPassword": profile.password,
        "wsLanguage": profile.language,
    }
    wrapped_request = {**request_vo, "invCustIdArray": {"string": [shipment_key]}}
    flat_request = {**request_vo, "invCustIdArray": [shipment_key]}
    return [
        ("ShippingDataRequestVO/wrapped", {"ShippingDataRequestVO": wrapped_request}),
        ("ShippingDataRequestVO/flat", {"ShippingDataRequestVO": flat_request}),
        *field_lookup_variants(reference_field, shipment_key, profile, inv_cust_id),
    ]


def is_auth_failure(message: str | None) -> bool:
    return bool(message and AUTH_FAILURE.search(message))


def is_collection_document(doc_type: str | None) -> bool:
    return bool(doc_type and COLLECTION_DOCUMENT.search(doc_type))


def read_documents(vo: dict[str, Any]) -> list[CarrierDocument]:
    raw_documents: list[Any] = []
    for key in DOCUMENT_LIST_KEYS:
        value = vo.get(key)
        if isinstance(value, dict) and key in value:
            value = value[key]
        raw_documents.extend(as_list(value))

    documents = []
    for raw in raw_documents:
        if not isinstance(raw, dict):
            continue
        documents.append(
            CarrierDocument(
                doc_id=first_value(raw, DOC_ID_FIELDS),
                doc_number=first_value(raw, DOC_NUMBER_FIELDS),
                doc_type=first_value(raw, DOC_TYPE_FIELDS),
                barcode=first_value(raw, BARCODE_FIELDS),
                label_url=first_value(raw, LABEL_URL_FIELDS),
            )
        )
    return documents


def build_lookup(shipment_key: str, vo: dict[str, Any]) -> TrackingLookup:
    out_flag = flag(vo.get("outFlag"))
    out_result = flag(vo.get("outResult"))
    lookup = TrackingLookup(shipment_key=shipment_key, out_flag=out_flag, out_result=out_result)
    if out_flag != "0":
        return lookup

    documents = read_documents(vo)
    lookup.documents = documents
    lookup.document_types = sorted({d.doc_type for d in documents if d.doc_type})

    shipping_docs = [d for d in documents if not is_collection_document(d.doc_type)]
    shipping = next((d for d in shipping_docs if d.barcode), None)
    shipping = shipping or next((d for d in documents if d.barcode), None)
    shipping = shipping or (shipping_docs[0] if shipping_docs else None)
    if shipping:
        lookup.tracking_number = shipping.barcode
        lookup.doc_id = shipping.doc_id
        lookup.doc_number = shipping.doc_number
        lookup.label_url = shipping.label_url
    if not lookup.label_url:
        lookup.label_url = next((d.label_url for d in documents if d.label_url), None)

    collection = next((d for d in documents if is_collection_document(d.doc_type)), None)
    if collection:
        lookup.cod_doc_id = collection.doc_id
        lookup.cod_doc_type = collection.doc_type
        lookup.cod_label_url = collection.label_url
    return lookup


def match_collection_document(documents: list[CarrierDocument], document_id: str) -> CarrierDocument | None:
    """The document carrying our collection document id.

    A collection-typed match wins; otherwise any match that has a label.
    """
    matching = [d for d in documents if d.doc_id == document_id]
    typed = next((d for d in matching if is_collection_document(d.doc_type)), None)
    return typed or next((d for d in matching if d.label_url), None)


class TrackingNumberResolver:
    """Maps a shipment key to the carrier's barcode and collection documents."""

    def __init__(self, transport: CarrierTransport, reference_field: str = REFERENCE_FIELD, inv_cust_id: str = ""):
        self.transport = transport
        self.reference_field = reference_field
        self.inv_cust_id = inv_cust_id

    async def _query(self, reference: str, variants: list[Variant]) -> dict[str, Any]:
        """First result that lists documents, else the last empty one.

        A non-zero result flag is not an error: it means the carrier has no
        documents yet. Raises the last failure only when every shape failed.
        """
        last_empty: dict[str, Any] | None = None
        last_error: Exception | None = None

        for variant, params in variants:
            try:
                raw = await self.transport.call(CarrierService.REPORT, LIST_DOCUMENTS, params)
                vo = unwrap(raw, REPORT_RESULT_PATHS)
            except (CarrierTransportError, MalformedResponseError) as e:
                if is_auth_failure(str(e)):
                    raise AuthenticationError(str(e)) from e
                logger.info(f"Document lookup {variant} failed for {reference}: {e}")
                last_error = e
                continue

            out_flag = flag(vo.get("outFlag"))
            out_result = flag(vo.get("outResult"))
            if out_flag != "0" and is_auth_failure(out_result):
                raise AuthenticationError(f"Carrier rejected credentials: {out_result}")
            if out_flag == "0" and read_documents(vo):
                logger.info(f"Document lookup {variant} answered for {reference}")
                return vo
            last_empty = vo

        if last_empty is None:
            raise last_error or CarrierTransportError(f"No document lookup request was sent for {reference}")
        logger.info(f"No carrier documents yet for {reference}: {flag(last_empty.get('outResult')) or 'empty list'}")
        return last_empty

    async def resolve(self, shipment_key: str, profile: CredentialProfile) -> TrackingLookup:
        """Query the reporting service by shipment key, trying each known request shape in order.

        When the carrier has no documents yet the lookup carries no tracking
        number and keeps the carrier's reason.
        """
        variants = lookup_variants(shipment_key, profile, self.reference_field, self.inv_cust_id)
        lookup = build_lookup(shipment_key, await self._query(shipment_key, variants))
        if lookup.documents:
            logger.info(
                f"Documents for {shipment_key}: "
                f"tracking={lookup.tracking_number or 'pending'} types={lookup.document_types}"
            )
        return lookup

    async def find_collection_document(self, document_id: str, profile: CredentialProfile) -> CarrierDocument | None:
        """Look up a COD collection document by the document id submitted at creation."""
        variants = field_lookup_variants(DOCUMENT_ID_FIELD, document_id, profile, self.inv_cust_id)
        vo = await self._query(document_id, variants)
        if flag(vo.get("outFlag")) != "0":
            return None
        document = match_collection_document(read_documents(vo), document_id)
        if document:
            logger.info(f"Collection document {document_id}: type={document.doc_type} label={document.label_url}")
        return document

    async def resolve_with_retry(
        self,
        shipment_key: str,
        profile: CredentialProfile,
        attempts: int,
        delay: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> tuple[TrackingLookup | None, int]:
        """Bounded retries until a barcode appears.

        Authentication failures stop immediately. Returns the last lookup (None
        if every attempt failed at the transport) and the attempts made.
        """
        lookup: TrackingLookup | None = None
        for attempt in range(1, attempts + 1):
            try:
                lookup = await self.resolve(shipment_key, profile)
            except AuthenticationError:
                raise
            except (CarrierConnectionError, CarrierTransportError, MalformedResponseError) as e:
                logger.warning(f"Tracking lookup attempt {attempt}/{attempts} for {shipment_key} failed: {e}")
                if attempt == attempts:
                    raise
            else:
                if lookup.tracking_number:
                    return lookup, attempt
                logger.info(f"Barcode not issued yet for {shipment_key} (attempt {attempt}/{attempts})")

            if attempt < attempts:
                await sleep(delay)
        return lookup, attempts
