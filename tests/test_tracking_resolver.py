import pytest

from conftest import documents, no_documents
from lxml import etree

from kargo.carrier.tracking import (
    TrackingNumberResolver,
    field_lookup_variants,
    is_auth_failure,
    is_collection_document,
    lookup_variants,
)
from kargo.carrier.transport import LIST_DOCUMENTS, SERVICE_NAMESPACES, SOAP_ENV, CarrierService, RawXmlTransport
from kargo.errors import AuthenticationError, CarrierTransportError

KEY = "LT20240301ABC123"


@pytest.fixture()
def resolver(transport):
    return TrackingNumberResolver(transport)


@pytest.fixture()
def profile(carrier_settings):
    return carrier_settings.profile(cod=True)


class TestCollectionDocument:
    @pytest.mark.parametrize("doc_type", ["TAHSILAT", "Collection Document", "COD", "payment_receipt"])
    def test_collection_types(self, doc_type):
        assert is_collection_document(doc_type)

    @pytest.mark.parametrize("doc_type", ["KARGO", "Invoice", "barcode", None])
    def test_other_types(self, doc_type):
        assert not is_collection_document(doc_type)


class TestTrackingNumberResolver:
    @pytest.mark.asyncio
    async def test_barcode_and_collection_document(self, resolver, transport, profile):
        transport.respond(
            LIST_DOCUMENTS,
            documents(
                {"docId": "C-9", "documentType": "TAHSILAT"},
                {"docId": "D-1", "docNumber": "N-1", "documentType": "KARGO", "barcodeStringValue": "123456789012"},
            ),
        )

        lookup = await resolver.resolve(KEY, profile)

        assert lookup.tracking_number == "123456789012"
        assert lookup.doc_id == "D-1"
        assert lookup.doc_number == "N-1"
        assert lookup.cod_doc_id == "C-9"
        assert lookup.cod_doc_type == "TAHSILAT"
        assert lookup.document_types == ["KARGO", "TAHSILAT"]
        request = transport.calls_for(LIST_DOCUMENTS)[0]["ShippingDataRequestVO"]
        assert request["wsUserName"] == "cod-user"
        assert request["invCustIdArray"] == {"string": [KEY]}

    @pytest.mark.asyncio
    async def test_barcode_synonyms(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, documents({"DOC_ID": "D-1", "DOC_TYPE": "KARGO", "ORDER_SEQ": 987654321}))

        lookup = await resolver.resolve(KEY, profile)

        assert lookup.tracking_number == "987654321"
        assert lookup.doc_id == "D-1"

    @pytest.mark.asyncio
    async def test_no_documents_is_not_an_error(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, no_documents("Kayıt bulunamadı"))

        lookup = await resolver.resolve(KEY, profile)

        assert lookup.tracking_number is None
        assert lookup.out_flag == "1"
        assert lookup.out_result == "Kayıt bulunamadı"
        assert len(transport.calls_for(LIST_DOCUMENTS)) == 4

    @pytest.mark.asyncio
    async def test_falls_through_request_shapes(self, resolver, transport, profile):
        def respond(params):
            if "fieldValueArray" in params:
                return documents({"docId": "D-1", "documentType": "KARGO", "barcode": "123456789012"})
            raise CarrierTransportError("invCustIdArray could not be bound")

        transport.respond(LIST_DOCUMENTS, respond)

        lookup = await resolver.resolve(KEY, profile)

        assert lookup.tracking_number == "123456789012"
        params = transport.calls_for(LIST_DOCUMENTS)
        assert len(params) == 3
        assert params[-1]["userName"] == "cod-user"
        assert params[-1]["fieldName"] == "INVOICE_KEY"
        assert params[-1]["fieldValueArray"] == [KEY]

    @pytest.mark.asyncio
    async def test_all_shapes_failing_reraises(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, CarrierTransportError("service unavailable"))

        with pytest.raises(CarrierTransportError):
            await resolver.resolve(KEY, profile)

    @pytest.mark.asyncio
    async def test_credential_rejection(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, no_documents("Kullanıcı adı boş olamaz"))

        with pytest.raises(AuthenticationError):
            await resolver.resolve(KEY, profile)
        assert len(transport.calls_for(LIST_DOCUMENTS)) == 1


class TestResolveWithRetry:
    @pytest.mark.asyncio
    async def test_retries_until_barcode(self, resolver, transport, profile):
        transport.respond(
            LIST_DOCUMENTS,
            *[no_documents()] * 4,
            documents({"docId": "D-1", "documentType": "KARGO", "barcodeStringValue": "123456789012"}),
        )
        sleeps = []

        async def sleep(delay):
            sleeps.append(delay)

        lookup, attempts = await resolver.resolve_with_retry(KEY, profile, attempts=3, delay=10, sleep=sleep)

        assert lookup.tracking_number == "123456789012"
        assert attempts == 2
        assert sleeps == [10]

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, no_documents())
        sleeps = []

        async def sleep(delay):
            sleeps.append(delay)

        lookup, attempts = await resolver.resolve_with_retry(KEY, profile, attempts=3, delay=10, sleep=sleep)

        assert lookup.tracking_number is None
        assert attempts == 3
        assert sleeps == [10, 10]

    @pytest.mark.asyncio
    async def test_authentication_failure_stops_immediately(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, no_documents("Hata: şifre boş"))

        async def sleep(delay):
            raise AssertionError("should not wait")

        with pytest.raises(AuthenticationError):
            await resolver.resolve_with_retry(KEY, profile, attempts=3, delay=10, sleep=sleep)


class TestLookupVariants:
    def test_request_trees(self, profile):
        variants = dict(lookup_variants(KEY, profile))

        ws_credentials = {"wsUserName": "cod-user", "wsPassword": "cod-pass", "wsLanguage": "TR"}
        credentials = {"userName": "cod-user", "password": "cod-pass", "language": "TR"}
        assert variants == {
            "ShippingDataRequestVO/wrapped": {
                "ShippingDataRequestVO": {**ws_credentials, "invCustIdArray": {"string": [KEY]}},
            },
            "ShippingDataRequestVO/flat": {
                "ShippingDataRequestVO": {**ws_credentials, "invCustIdArray": [KEY]},
            },
            "fieldValueArray/flat": {**credentials, "fieldName": "INVOICE_KEY", "fieldValueArray": [KEY]},
            "fieldValueArray/wrapped": {
                **credentials,
                "fieldName": "INVOICE_KEY",
                "fieldValueArray": {"string": [KEY]},
            },
        }
        assert list(variants) == [
            "ShippingDataRequestVO/wrapped",
            "ShippingDataRequestVO/flat",
            "fieldValueArray/flat",
            "fieldValueArray/wrapped",
        ]

    def test_customer_params_on_field_lookups(self, profile):
        variants = field_lookup_variants("DOCUMENT_ID", "000123456789", profile, inv_cust_id="998877")

        for _name, params in variants:
            assert params["fieldName"] == "DOCUMENT_ID"
            assert params["custParamsVO"] == {"invCustIdArray": ["998877"]}
        assert "custParamsVO" not in field_lookup_variants("DOCUMENT_ID", "000123456789", profile)[0][1]

    def test_envelope_children(self, carrier_settings, profile):
        transport = RawXmlTransport(carrier_settings)
        namespace = SERVICE_NAMESPACES[CarrierService.REPORT]

        children = []
        for _name, params in lookup_variants(KEY, profile):
            root = etree.fromstring(transport.build_envelope(CarrierService.REPORT, LIST_DOCUMENTS, params))
            request = root.find(f"{{{SOAP_ENV}}}Body/{{{namespace}}}{LIST_DOCUMENTS}")
            children.append([child.tag for child in request])

        assert children[0] == ["ShippingDataRequestVO"]
        assert children[1] == ["ShippingDataRequestVO"]
        assert children[2] == ["userName", "password", "language", "fieldName", "fieldValueArray"]
        wrapped = etree.fromstring(
            transport.build_envelope(CarrierService.REPORT, LIST_DOCUMENTS, lookup_variants(KEY, profile)[0][1])
        )
        assert [e.tag for e in wrapped.iter("invCustIdArray", "string")] == ["invCustIdArray", "string"]


class TestAuthFailure:
    @pytest.mark.parametrize(
        "message",
        ["Authentication failed", "auth error", "Unauthorized", "Kullanıcı adı boş olamaz", "Yetkisiz erişim"],
    )
    def test_detected(self, message):
        assert is_auth_failure(message)

    @pytest.mark.parametrize("message", ["Author field missing", "Kayıt bulunamadı", "", None])
    def test_not_detected(self, message):
        assert not is_auth_failure(message)


class TestFindCollectionDocument:
    DOCUMENT_ID = "000123456789"

    @pytest.mark.asyncio
    async def test_matches_submitted_document_id(self, resolver, transport, profile):
        transport.respond(
            LIST_DOCUMENTS,
            documents(
                {"docId": "999", "documentType": "TAHSILAT", "labelUrl": "https://label.test/other"},
                {"DOC_ID": self.DOCUMENT_ID, "DOCUMENT_TYPE": "TAHSILAT", "labelURL": "https://label.test/cod"},
            ),
        )

        document = await resolver.find_collection_document(self.DOCUMENT_ID, profile)

        assert document.doc_id == self.DOCUMENT_ID
        assert document.doc_type == "TAHSILAT"
        assert document.label_url == "https://label.test/cod"
        params = transport.calls_for(LIST_DOCUMENTS)[0]
        assert params["fieldName"] == "DOCUMENT_ID"
        assert params["fieldValueArray"] == [self.DOCUMENT_ID]
        assert params["userName"] == "cod-user"

    @pytest.mark.asyncio
    async def test_falls_back_to_labelled_match(self, resolver, transport, profile):
        transport.respond(
            LIST_DOCUMENTS,
            documents({"docId": self.DOCUMENT_ID, "documentType": "KARGO", "labelUrl": "https://label.test/cod"}),
        )

        document = await resolver.find_collection_document(self.DOCUMENT_ID, profile)

        assert document.label_url == "https://label.test/cod"
        assert document.doc_type == "KARGO"

    @pytest.mark.asyncio
    async def test_no_match(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, documents({"docId": "999", "documentType": "TAHSILAT"}))

        assert await resolver.find_collection_document(self.DOCUMENT_ID, profile) is None

    @pytest.mark.asyncio
    async def test_nothing_reported_yet(self, resolver, transport, profile):
        transport.respond(LIST_DOCUMENTS, no_documents())

        assert await resolver.find_collection_document(self.DOCUMENT_ID, profile) is None
        assert len(transport.calls_for(LIST_DOCUMENTS)) == 2
