from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

CanonicalStatus = Literal["not_processed", "in_transit", "delivered", "cancelled", "unknown"]
CreationOutcome = Literal["already_done", "created", "pending_barcode", "failed"]


class ShipmentEvent(BaseModel):
    event_id: str | None = None
    name: str | None = None
    date: str | None = None
    time: str | None = None
    city: str | None = None
    town: str | None = None
    unit: str | None = None
    reason_id: str | None = None
    reason_name: str | None = None
    timestamp: datetime | None = None


class ShipmentStatusReport(BaseModel):
    shipment_key: str
    code: str = ""
    status: CanonicalStatus = "unknown"
    is_final: bool = False
    is_successful: bool = False
    has_problem: bool = False
    reason_id: str | None = None
    reason_name: str | None = None
    tracking_number: str | None = None
    tracking_url: str | None = None
    message: str = ""
    events: list[ShipmentEvent] = Field(default_factory=list)


class CarrierDocument(BaseModel):
    doc_id: str | None = None
    doc_number: str | None = None
    doc_type: str | None = None
    barcode: str | None = None
    label_url: str | None = None


class TrackingLookup(BaseModel):
    """What the carrier's reporting service knows about a shipment key."""

    shipment_key: str
    tracking_number: str | None = None
    label_url: str | None = None
    doc_id: str | None = None
    doc_number: str | None = None
    cod_doc_id: str | None = None
    cod_doc_type: str | None = None
    cod_label_url: str | None = None
    document_types: list[str] = Field(default_factory=list)
    documents: list[CarrierDocument] = Field(default_factory=list)
    out_flag: str | None = None
    out_result: str | None = None


class CreateShipmentResult(BaseModel):
    ok: bool
    outcome: CreationOutcome
    reused: bool = False
    order_id: str
    shipment_key: str | None = None
    tracking_number: str | None = None
    job_id: int | None = None
    error: str | None = None
    error_kind: str | None = None
    carrier_codes: dict[str, str] = Field(default_factory=dict)


class TrackingRefreshResult(BaseModel):
    ok: bool
    order_id: str
    tracking_number: str | None = None
    attempts: int = 0
    message: str = ""


class CancelResult(BaseModel):
    ok: bool
    shipment_key: str
    persisted: bool = False
    message: str = ""
