from datetime import datetime, timezone

import pytest

from kargo.carrier.transport import CarrierService
from kargo.config import CarrierSettings, Settings
from kargo.models.order import Order
from kargo.services.context import build_context
from kargo.storage.database import OrderStore


class FakeTransport:
    """In-memory carrier: canned responses per operation, every call recorded.

    Responses are consumed in order; the last one keeps answering. A response may
    be a dict, an exception to raise, or a callable taking the request params.
    """

    def __init__(self):
        self.calls: list[tuple[CarrierService, str, dict]] = []
        self.responses: dict[str, list] = {}
        self.schema_names: set[str] = set()
        self.schema_error: Exception | None = None
        self.schema_probes = 0
        self.closed = False

    def respond(self, operation: str, *responses) -> None:
        self.responses.setdefault(operation, []).extend(responses)

    def calls_for(self, operation: str) -> list[dict]:
        return [params for _service, op, params in self.calls if op == operation]

    async def call(self, service, operation, params):
        self.calls.append((service, operation, params))
        queue = self.responses.get(operation)
        if not queue:
            raise AssertionError(f"Unexpected carrier call: {operation}")
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(params)
        return response

    async def element_names(self, service):
        self.schema_probes += 1
        if self.schema_error:
            raise self.schema_error
        return self.schema_names

    async def aclose(self):
        self.closed = True


def create_ok(job_id: int = 1001) -> dict:
    return {"ShippingOrderResultVO": {"outFlag": "0", "outResult": "Başarılı", "jobId": job_id}}


def create_duplicate(shipment_key: str = "LT20240301AAAAAA") -> dict:
    return {
        "createShipmentResponse": {
            "ShippingOrderResultVO": {
                "outFlag": "1",
                "outResult": "Hata oluştu",
                "jobId": 0,
                "shippingOrderDetailVO": {
                    "cargoKey": shipment_key,
                    "errCode": 60020,
                    "errMessage": f"{shipment_key} kargo anahtarı sistemde mevcuttur.",
                },
            }
        }
    }


def create_rejected(err_code: int = 82500, message: str = "Alıcı adresi geçersiz") -> dict:
    return {
        "ShippingOrderResultVO": {
            "outFlag": "1",
            "outResult": "Hata oluştu",
            "shippingOrderDetailVO": [{"errCode": err_code, "errMessage": message}],
        }
    }


def documents(*docs: dict) -> dict:
    return {"ShippingDataResponseVO": {"outFlag": "0", "outResult": "Başarılı", "documentDetailVO": list(docs)}}


def no_documents(reason: str = "Kayıt bulunamadı") -> dict:
    return {"ShippingDataResponseVO": {"outFlag": "1", "outResult": reason}}


@pytest.fixture()
def carrier_settings() -> CarrierSettings:
    return CarrierSettings(
        username="shop-user",
        password="shop-pass",
        cod_username="cod-user",
        cod_password="cod-pass",
        tracking_retry_attempts=3,
        tracking_retry_delay=0,
    )


@pytest.fixture()
def settings(tmp_path, carrier_settings) -> Settings:
    return Settings(internal_token="test-token", data_dir=str(tmp_path), carrier=carrier_settings)


@pytest.fixture()
def store(tmp_path) -> OrderStore:
    order_store = OrderStore(tmp_path)
    order_store.init_db()
    return order_store


@pytest.fixture()
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture()
def shipping(settings, store, transport):
    return build_context(settings, store=store, transport=transport)


@pytest.fixture()
def make_order(store):
    def _make(order_id: str = "O-1", **overrides) -> Order:
        data = {
            "id": order_id,
            "created_at": datetime(2024, 3, 1, 10, 30, tzinfo=timezone.utc),
            "customer_name": "Ayşe Yılmaz",
            "phone": "0532 123 45 67",
            "email": "ayse@example.com",
            "address": "Moda Cad. No: 12 D: 3",
            "city": "İstanbul",
            "district": "Kadıköy",
            "payment_method": "iyzico",
            "status": "paid",
            "payment_status": "paid",
            "total_price": 349.9,
        }
        data.update(overrides)
        order = Order(**data)
        store.save(order)
        return order

    return _make
