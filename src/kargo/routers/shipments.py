import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ValidationError

from kargo.auth import get_shipping, verify_auth
from kargo.errors import ShippingError
from kargo.models.order import CodState
from kargo.models.shipment import (
    CancelResult,
    CreateShipmentResult,
    ShipmentStatusReport,
    TrackingRefreshResult,
)
from kargo.services.context import ShippingContext

logger = logging.getLogger(__name__)

router = APIRouter()


class PaymentTypeUpdate(BaseModel):
    shipping_payment_type: str


ERROR_STATUS = {
    "not_found": 404,
    "business": 409,
    "configuration": 500,
    "transport": 502,
    "carrier": 502,
    "storage": 500,
}


def raise_for(error: ShippingError) -> None:
    raise HTTPException(status_code=ERROR_STATUS.get(error.kind, 500), detail=str(error))


@router.get("/status", response_model=ShipmentStatusReport)
async def shipment_status_by_key(
    key: str = Query(..., min_length=1),
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    """Carrier status for a bare shipment key."""
    try:
        return await shipping.tracker.query_status(key)
    except ShippingError as e:
        raise_for(e)


@router.post("/{order_id}/create", response_model=CreateShipmentResult)
async def create_shipment(
    order_id: str,
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    """Create the carrier shipment for an order (idempotent)."""
    result = await shipping.orchestrator.create(order_id)
    if not result.ok:
        status_code = 400 if result.error_kind == "carrier" else ERROR_STATUS.get(result.error_kind or "", 500)
        raise HTTPException(status_code=status_code, detail=result.model_dump())
    return result


@router.post("/{order_id}/refresh-tracking", response_model=TrackingRefreshResult)
async def refresh_tracking(
    order_id: str,
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    """Fetch the carrier barcode for an existing shipment."""
    try:
        result = await shipping.tracker.refresh_tracking_number(order_id)
    except ShippingError as e:
        raise_for(e)
    if not result.ok:
        raise HTTPException(status_code=404, detail=result.message)
    return result


@router.post("/{order_id}/cod/reconcile", response_model=CodState)
async def reconcile_cod(
    order_id: str,
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    try:
        return await shipping.cod.reconcile(order_id)
    except ShippingError as e:
        raise_for(e)


@router.get("/{order_id}/status", response_model=ShipmentStatusReport)
async def shipment_status(
    order_id: str,
    persist: bool = True,
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    try:
        return await shipping.tracker.refresh_status(order_id, persist=persist)
    except ShippingError as e:
        raise_for(e)


@router.post("/{order_id}/cancel", response_model=CancelResult)
async def cancel_shipment(
    order_id: str,
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    try:
        return await shipping.cancellation.cancel(order_id=order_id)
    except ShippingError as e:
        raise_for(e)


@router.get("/{order_id}/label-value")
async def label_value(
    order_id: str,
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    """Value the label renderer should encode: barcode if issued, else the shipment key."""
    order = shipping.store.get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail="Order not found")
    value = order.label_value()
    if not value:
        raise HTTPException(status_code=409, detail="No shipment has been created for this order")
    return {
        "order_id": order_id,
        "value": value,
        "is_carrier_barcode": bool(order.shipping_tracking_number),
        "collection_label_url": order.yurtici_cod_label_url,
    }


@router.patch("/{order_id}/payment-type")
async def set_payment_type(
    order_id: str,
    body: PaymentTypeUpdate,
    shipping: ShippingContext = Depends(get_shipping),
    _: None = Depends(verify_auth),
):
    """How the carrier collects a COD order's payment: "cash" or "card"."""
    if shipping.store.get(order_id) is None:
        raise HTTPException(status_code=404, detail="Order not found")
    try:
        shipping.store.update(order_id, {"shipping_payment_type": body.shipping_payment_type})
    except ValidationError as e:
        raise HTTPException(status_code=400, detail='shipping_payment_type must be "cash" or "card"') from e
    logger.info(f"Order {order_id} collection preference set to {body.shipping_payment_type}")
    return {"order_id": order_id, "shipping_payment_type": body.shipping_payment_type}
