"""Shipment status query and normalization of `queryShipment` responses."""

import logging
from datetime import date, datetime, time
from typing import Any

from kargo.carrier.responses import as_list, first_value, flag, unwrap
from kargo.carrier.transport import QUERY_SHIPMENT, CarrierService, CarrierTransport
from kargo.config import CredentialProfile
from kargo.errors import CarrierRejectedError
from kargo.models.shipment import CanonicalStatus, ShipmentEvent, ShipmentStatusReport

logger = logging.getLogger(__name__)

QUERY_RESULT_PATHS = (
    ("queryShipmentReturn",),
    ("queryShipmentResponse", "queryShipmentReturn"),
    ("queryShipmentResult", "queryShipmentReturn"),
    ("return", "queryShipmentReturn"),
    ("result", "queryShipmentReturn"),
    ("ShippingDeliveryVO",),
)
DELIVERY_DETAIL_KEYS = ("shippingDeliveryDetailVO", "shippingDeliveryDetailVo", "shippingDeliveryDetailVos")
ITEM_DETAIL_KEYS = ("shippingDeliveryItemDetailVO", "shippingDeliveryItemDetailVo")
EVENT_LIST_KEYS = ("invDocCargoVOArray", "invDocCargoVO", "cargoEventVOArray")

# Carrier operation status -> (canonical status, final, successful)
STATUS_CODES: dict[str, tuple[CanonicalStatus, bool, bool]] = {
    "NOP": ("not_processed", False, False),
    "IND": ("in_transit", False, False),
    "ISR": ("in_transit", False, False),
    "CNL": ("cancelled", True, False),
    "ISC": ("cancelled", True, False),
    "BI": ("cancelled", True, False),
    "DLV": ("delivered", True, True),
}
PROBLEM_CODES = ("CNL", "ISC", "BI")
MEANINGLESS_REASONS = ("", "0", "-", "null", "none")

TRACKING_FIELDS = ("barcode", "barcodeNo", "shipmentNo", "shipmentNumber", "trackingNo", "trackingNumber", "waybillNo", "awbNo")
DATE_FORMATS = ("%Y%m%d", "%Y-%m-%d", "%d.%m.%Y", "%d/%m/%Y")
TIME_FORMATS = ("%H%M%S", "%H:%M:%S", "%H:%M")


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    text = value.strip()
    # Only the date part is used; the carrier sends time separately.
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def _parse_time(value: str | None) -> time:
    if value:
        text = value.strip()
        if text.isdigit():
            # HMM / HHMM / HHMMSS all become HHMMSS
            if len(text) % 2:
                text = text.zfill(len(text) + 1)
            text = text.ljust(6, "0")
        for fmt in TIME_FORMATS:
            try:
                return datetime.strptime(text, fmt).time()
            except ValueError:
                continue
    return time.min


def event_timestamp(event: ShipmentEvent) -> datetime | None:
    parsed = _parse_date(event.date)
    if parsed is None:
        return None
    return datetime.combine(parsed, _parse_time(event.time))


def sort_events(events: list[ShipmentEvent]) -> list[ShipmentEvent]:
    """Chronological order; events with unparseable dates follow, in carrier order."""
    dated = []
    undated = []
    for event in events:
        timestamp = event_timestamp(event)
        if timestamp is None:
            undated.append(event)
        else:
            dated.append(event.model_copy(update={"timestamp": timestamp}))
    dated.sort(key=lambda e: e.timestamp)
    return dated + undated


def read_event(raw: dict[str, Any]) -> ShipmentEvent:
    return ShipmentEvent(
        event_id=first_value(raw, ("eventId", "EVENT_ID")),
        name=first_value(raw, ("eventName", "EVENT_NAME")),
        date=first_value(raw, ("eventDate", "EVENT_DATE")),
        time=first_value(raw, ("eventTime", "EVENT_TIME")),
        city=first_value(raw, ("cityName", "CITY_NAME")),
        town=first_value(raw, ("townName", "TOWN_NAME")),
        unit=first_value(raw, ("unitName", "UNIT_NAME")),
        reason_id=first_value(raw, ("reasonId", "REASON_ID")),
        reason_name=first_value(raw, ("reasonName", "REASON_NAME")),
    )


def _first_present(data: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None:
            if isinstance(value, dict) and key in value:
                return value[key]
            return value
    return None


def is_meaningful_reason(reason_id: str | None) -> bool:
    return reason_id is not None and reason_id.strip().lower() not in MEANINGLESS_REASONS


def normalize_status(shipment_key: str, raw: dict[str, Any]) -> ShipmentStatusReport:
    """Turn a raw `queryShipment` response into a `ShipmentStatusReport`.

    Raises CarrierRejectedError when the carrier answers with a non-zero flag.
    """
    vo = unwrap(raw, QUERY_RESULT_PATHS)
    out_flag = flag(vo.get("outFlag"))
    out_result = flag(vo.get("outResult"))
    if out_flag and out_flag != "0":
        raise CarrierRejectedError(
            f"Carrier status query failed: {out_result or 'unknown error'}",
            out_flag=out_flag,
            out_result=out_result,
        )

    details = as_list(_first_present(vo, DELIVERY_DETAIL_KEYS))
    details = [d for d in details if isinstance(d, dict)]
    if not details:
        return ShipmentStatusReport(shipment_key=shipment_key, message="No shipment information yet")

    detail = details[0]
    code = (first_value(detail, ("operationStatus", "OPERATION_STATUS")) or "").upper()
    item = next(iter(as_list(_first_present(detail, ITEM_DETAIL_KEYS))), None) or {}

    raw_events = as_list(_first_present(item, EVENT_LIST_KEYS)) if isinstance(item, dict) else []
    events = sort_events([read_event(e) for e in raw_events if isinstance(e, dict)])

    canonical, is_final, is_successful = STATUS_CODES.get(code, ("unknown", False, False))
    reason_id = first_value(item, ("reasonId", "REASON_ID")) or first_value(detail, ("reasonId",))
    reason_name = (
        first_value(item, ("reasonDesc", "reasonName", "cargoReasonExplanation"))
        or first_value(detail, ("reasonDesc", "reasonName"))
    )
    has_problem = is_meaningful_reason(reason_id) or code in PROBLEM_CODES

    tracking_number = first_value(detail, TRACKING_FIELDS) or first_value(item, TRACKING_FIELDS)
    tracking_url = first_value(item, ("trackingUrl", "trackingURL")) or first_value(detail, ("trackingUrl",))
    message = first_value(detail, ("operationMessage",)) or (f"Carrier status: {code}" if code else "")

    return ShipmentStatusReport(
        shipment_key=first_value(detail, ("cargoKey",)) or shipment_key,
        code=code,
        status=canonical,
        is_final=is_final,
        is_successful=is_successful,
        has_problem=has_problem,
        reason_id=reason_id,
        reason_name=reason_name,
        tracking_number=tracking_number,
        tracking_url=tracking_url,
        message=message,
        events=events,
    )


class ShipmentStatusQuery:
    def __init__(self, transport: CarrierTransport):
        self.transport = transport

    async def query(self, shipment_key: str, profile: CredentialProfile) -> ShipmentStatusReport:
        params = {
            "wsUserName": profile.username,
            "wsPassword": profile.password,
            "wsLanguage": profile.language,
            "keys": [shipment_key],
            "keyType": 0,  # 0 = cargo key, 1 = invoice key
            "addHistoricalData": True,
            "onlyTracking": False,
        }
        raw = await self.transport.call(CarrierService.DISPATCH, QUERY_SHIPMENT, params)
        report = normalize_status(shipment_key, raw)
        logger.info(
            f"Status for {shipment_key}: {report.code or '-'} ({report.status}), "
            f"{len(report.events)} events, problem={report.has_problem}"
        )
        return report
