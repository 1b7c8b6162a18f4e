import pytest

from conftest import documents, no_documents
from kargo.carrier.transport import LIST_DOCUMENTS
from kargo.errors import BusinessRuleError, CarrierTransportError, NotFoundError
from kargo.models.order import ShipmentStatus

KEY = "LT20240301AAAAAA"
DOCUMENT_ID = "000123456789"


@pytest.fixture()
def cod_order(make_order):
    return make_order(
        "C1",
        payment_method="kapida",
        shipping_reference_number=KEY,
        shipping_status="created_pending_barcode",
    )


class TestCODReconciler:
    @pytest.mark.asyncio
    async def test_no_collection_document_yet(self, shipping, transport, store, cod_order):
        transport.respond(LIST_DOCUMENTS, no_documents())

        state = await shipping.cod.reconcile("C1")

        assert state.confirmed is False
        assert state.collection_doc_id is None
        saved = store.get("C1")
        assert saved.yurtici_cod_confirmed is False
        assert saved.shipping_status == ShipmentStatus.CREATED_PENDING_BARCODE

    @pytest.mark.asyncio
    async def test_collection_document_confirms(self, shipping, transport, store, cod_order):
        transport.respond(
            LIST_DOCUMENTS,
            documents({"docId": "C-7", "documentType": "Tahsilat Belgesi"}, {"docId": "D-1", "documentType": "KARGO"}),
        )

        state = await shipping.cod.reconcile("C1")

        assert state.confirmed is True
        assert state.collection_doc_id == "C-7"
        assert state.collection_doc_type == "Tahsilat Belgesi"
        saved = store.get("C1")
        assert saved.yurtici_cod_confirmed is True
        assert saved.yurtici_report_document_types == ["KARGO", "Tahsilat Belgesi"]
        assert saved.shipping_tracking_number is None
        assert saved.shipping_status == ShipmentStatus.CREATED_PENDING_BARCODE
        assert transport.calls_for(LIST_DOCUMENTS)[0]["ShippingDataRequestVO"]["wsUserName"] == "cod-user"

    @pytest.mark.asyncio
    async def test_keeps_earlier_confirmation(self, shipping, transport, store, make_order):
        make_order(
            "C2",
            payment_method="kapida",
            shipping_reference_number=KEY,
            shipping_status="created",
            yurtici_cod_doc_id="C-7",
            yurtici_cod_doc_type="TAHSILAT",
            yurtici_cod_confirmed=True,
        )
        transport.respond(LIST_DOCUMENTS, no_documents())

        state = await shipping.cod.reconcile("C2")

        assert state.confirmed is True
        assert store.get("C2").yurtici_cod_doc_id == "C-7"

    @pytest.mark.asyncio
    async def test_prefers_submitted_document_id(self, shipping, transport, store, make_order):
        make_order(
            "C5",
            payment_method="kapida",
            shipping_reference_number=KEY,
            shipping_status="created",
            yurtici_tt_document_id=DOCUMENT_ID,
        )

        def respond(params):
            if params.get("fieldName") == "DOCUMENT_ID":
                return documents(
                    {"docId": DOCUMENT_ID, "documentType": "TAHSILAT", "labelUrl": "https://label.test/cod"},
                )
            return documents(
                {"docId": "C-OTHER", "documentType": "Tahsilat Belgesi"},
                {"docId": "D-1", "documentType": "KARGO"},
            )

        transport.respond(LIST_DOCUMENTS, respond)

        state = await shipping.cod.reconcile("C5")

        assert state.confirmed is True
        assert state.collection_doc_id == DOCUMENT_ID
        assert state.collection_doc_type == "TAHSILAT"
        assert state.collection_label_url == "https://label.test/cod"
        saved = store.get("C5")
        assert saved.yurtici_cod_doc_id == DOCUMENT_ID
        assert saved.yurtici_cod_label_url == "https://label.test/cod"
        assert saved.shipping_status == ShipmentStatus.CREATED
        lookup = transport.calls_for(LIST_DOCUMENTS)[-1]
        assert lookup["fieldValueArray"] == [DOCUMENT_ID]
        assert lookup["userName"] == "cod-user"

    @pytest.mark.asyncio
    async def test_document_id_lookup_failure_keeps_key_lookup(self, shipping, transport, store, make_order):
        make_order(
            "C6",
            payment_method="kapida",
            shipping_reference_number=KEY,
            shipping_status="created",
            yurtici_tt_document_id=DOCUMENT_ID,
        )

        def respond(params):
            if params.get("fieldName") == "DOCUMENT_ID":
                raise CarrierTransportError("report service down")
            return documents({"docId": "C-7", "documentType": "TAHSILAT"})

        transport.respond(LIST_DOCUMENTS, respond)

        state = await shipping.cod.reconcile("C6")

        assert state.confirmed is True
        assert state.collection_doc_id == "C-7"
        assert state.collection_label_url is None

    @pytest.mark.asyncio
    async def test_non_cod_order(self, shipping, transport, make_order):
        make_order("C3", shipping_reference_number=KEY, shipping_status="created")

        with pytest.raises(BusinessRuleError):
            await shipping.cod.reconcile("C3")
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_no_shipment_yet(self, shipping, transport, make_order):
        make_order("C4", payment_method="kapida")

        with pytest.raises(BusinessRuleError):
            await shipping.cod.reconcile("C4")
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_unknown_order(self, shipping):
        with pytest.raises(NotFoundError):
            await shipping.cod.reconcile("missing")
