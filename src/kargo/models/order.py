from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

PaymentMethod = Literal["havale", "iyzico", "kapida", "cod"]

ONLINE_PAYMENT_METHODS = ("havale", "iyzico")
COD_PAYMENT_METHODS = ("kapida", "cod")


class ShipmentStatus(str, Enum):
    NONE = "none"
    CREATED_PENDING_BARCODE = "created_pending_barcode"
    CREATED = "created"
    IN_TRANSIT = "in_transit"
    DELIVERED = "delivered"
    CANCELED = "canceled"
    CREATE_FAILED = "create_failed"


# Position on the forward path; diversions are handled separately.
_PROGRESS = {
    ShipmentStatus.NONE: 0,
    ShipmentStatus.CREATE_FAILED: 0,
    ShipmentStatus.CREATED_PENDING_BARCODE: 1,
    ShipmentStatus.CREATED: 2,
    ShipmentStatus.IN_TRANSIT: 3,
    ShipmentStatus.DELIVERED: 4,
}

SHIPPED_STATUSES = (ShipmentStatus.CREATED, ShipmentStatus.IN_TRANSIT, ShipmentStatus.DELIVERED)
ACTIVE_STATUSES = (ShipmentStatus.CREATED_PENDING_BARCODE, ShipmentStatus.CREATED, ShipmentStatus.IN_TRANSIT)


def can_transition(current: ShipmentStatus, target: ShipmentStatus) -> bool:
    """Whether a shipment may move from `current` to `target`.

    Status only advances along none -> created_pending_barcode -> created ->
    in_transit -> delivered, or diverts to canceled / create_failed. Writing the
    same status again is allowed.
    """
    if current == target:
        return True
    if current == ShipmentStatus.CANCELED:
        return False
    if target == ShipmentStatus.CANCELED:
        return current != ShipmentStatus.DELIVERED
    if target == ShipmentStatus.CREATE_FAILED:
        return current in (ShipmentStatus.NONE, ShipmentStatus.CREATE_FAILED)
    return _PROGRESS[target] > _PROGRESS[current]


def advance(current: ShipmentStatus, target: ShipmentStatus) -> ShipmentStatus:
    """Return `target` if the move is legal, else keep `current`."""
    return target if can_transition(current, target) else current


class CodState(BaseModel):
    collection_doc_id: str | None = None
    collection_doc_type: str | None = None
    collection_label_url: str | None = None
    confirmed: bool = False
    reported_document_types: list[str] = Field(default_factory=list)


class Order(BaseModel):
    id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    customer_name: str = ""
    phone: str = ""
    email: str | None = None
    address: str = ""
    city: str = ""
    district: str = ""
    payment_method: PaymentMethod = "iyzico"
    status: str = "yeni"
    payment_status: str | None = None
    total_price: float = 0.0

    shipping_carrier: str | None = None
    shipping_reference_number: str | None = None
    shipping_tracking_number: str | None = None
    shipping_status: ShipmentStatus = ShipmentStatus.NONE
    shipping_label_url: str | None = None
    shipping_error_message: str | None = None
    shipping_payment_type: Literal["cash", "card"] | None = None
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None

    yurtici_cod_doc_id: str | None = None
    yurtici_cod_doc_type: str | None = None
    yurtici_cod_label_url: str | None = None
    yurtici_cod_confirmed: bool = False
    yurtici_report_document_types: list[str] = Field(default_factory=list)

    yurtici_tt_collection_type: str | None = None
    yurtici_tt_document_id: str | None = None
    yurtici_tt_invoice_amount: float | None = None
    yurtici_tt_document_save_type: str | None = None
    yurtici_dc_credit_rule: str | None = None
    yurtici_dc_selected_credit: str | None = None

    yurtici_job_id: int | None = None
    yurtici_create_out_flag: str | None = None
    yurtici_create_out_result: str | None = None
    yurtici_create_err_code: str | None = None
    yurtici_create_err_message: str | None = None

    @property
    def is_cod(self) -> bool:
        return self.payment_method in COD_PAYMENT_METHODS

    @property
    def is_online_payment(self) -> bool:
        return self.payment_method in ONLINE_PAYMENT_METHODS

    @property
    def has_address(self) -> bool:
        return bool(self.address and self.city and self.district)

    @property
    def cod_state(self) -> CodState | None:
        if not self.is_cod:
            return None
        return CodState(
            collection_doc_id=self.yurtici_cod_doc_id,
            collection_doc_type=self.yurtici_cod_doc_type,
            collection_label_url=self.yurtici_cod_label_url,
            confirmed=self.yurtici_cod_confirmed,
            reported_document_types=list(self.yurtici_report_document_types),
        )

    def effective_payment_status(self) -> str | None:
        """Payment status, falling back to the legacy order status field."""
        if self.payment_status:
            return self.payment_status
        match self.status:
            case "paid":
                return "paid"
            case "pending_payment":
                return "awaiting_payment"
            case "payment_failed":
                return "failed"
            case _:
                return None

    def already_shipped(self) -> bool:
        return bool(
            self.shipping_tracking_number
            or self.shipping_label_url
            or self.shipping_status in SHIPPED_STATUSES
        )

    def label_value(self) -> str | None:
        """Value printed on the parcel label: carrier barcode, else our shipment key."""
        return self.shipping_tracking_number or self.shipping_reference_number
