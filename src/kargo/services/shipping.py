"""Shipment creation: turns an eligible order into a carrier shipment, at most once.

The idempotency gate reads the stored order and writes back without a lock, so
two concurrent requests for one order can both reach the carrier. Both submit
the same deterministic shipment key and the carrier answers the second with its
"already exists" code, which is handled here as a successful duplicate.
"""

import logging
import sqlite3
from typing import Any

from kargo.carrier.builder import ShipmentOrderBuilder
from kargo.carrier.keys import generate_cargo_key
from kargo.carrier.masking import mask_payload
from kargo.carrier.responses import CreateOutcome, read_create_result
from kargo.carrier.schema import DEFAULT_FIELD_NAMES, SchemaFieldResolver
from kargo.carrier.tracking import TrackingNumberResolver
from kargo.carrier.transport import CREATE_SHIPMENT, CarrierService, CarrierTransport
from kargo.config import CarrierSettings
from kargo.errors import (
    BusinessRuleError,
    CarrierConnectionError,
    CarrierRejectedError,
    CarrierTransportError,
    ConfigurationError,
    MalformedResponseError,
    NotFoundError,
    ShippingError,
)
from kargo.models.order import Order, ShipmentStatus, advance
from kargo.models.shipment import CreateShipmentResult, TrackingLookup
from kargo.services.cod import CODReconciler
from kargo.storage.database import OrderStore

logger = logging.getLogger(__name__)

CARRIER_NAME = "yurtici"
CANCELLED_ORDER_STATUSES = ("iptal", "cancelled", "canceled", "payment_failed")
PAID_STATUSES = ("paid", "success")


def check_eligibility(order: Order) -> None:
    """Raise BusinessRuleError unless the order may be handed to the carrier."""
    if order.status in CANCELLED_ORDER_STATUSES:
        raise BusinessRuleError(f"Order is {order.status}; it cannot be shipped")
    if order.shipping_status == ShipmentStatus.CANCELED:
        raise BusinessRuleError("The shipment for this order was cancelled")
    if not order.has_address:
        raise BusinessRuleError("Order address is incomplete (address, city and district are required)")
    if order.is_online_payment and order.effective_payment_status() not in PAID_STATUSES:
        raise BusinessRuleError(
            f"Online payment is not confirmed (payment status: {order.effective_payment_status() or 'unknown'})"
        )


def _diagnostics(outcome: CreateOutcome) -> dict[str, Any]:
    return {
        "yurtici_create_out_flag": outcome.out_flag,
        "yurtici_create_out_result": outcome.out_result,
        "yurtici_create_err_code": outcome.err_code or None,
        "yurtici_create_err_message": outcome.err_message or None,
        "yurtici_job_id": outcome.job_id,
    }


class ShipmentCreationOrchestrator:
    def __init__(
        self,
        settings: CarrierSettings,
        store: OrderStore,
        transport: CarrierTransport,
        field_resolver: SchemaFieldResolver,
        tracking: TrackingNumberResolver,
        cod: CODReconciler,
    ):
        self.settings = settings
        self.store = store
        self.transport = transport
        self.field_resolver = field_resolver
        self.builder = ShipmentOrderBuilder(settings)
        self.tracking = tracking
        self.cod = cod

    async def create(self, order_id: str) -> CreateShipmentResult:
        """Create the carrier shipment for an order; always returns a structured result."""
        try:
            return await self._create(order_id)
        except ShippingError as e:
            logger.warning(f"Shipment creation for {order_id} failed ({e.kind}): {e}")
            codes = {}
            if isinstance(e, CarrierRejectedError):
                codes = {"outFlag": e.out_flag, "outResult": e.out_result, "errCode": e.err_code}
            return CreateShipmentResult(
                ok=False, outcome="failed", order_id=order_id, error=str(e), error_kind=e.kind, carrier_codes=codes
            )
        except sqlite3.Error as e:
            logger.exception(f"Order store failure while creating shipment for {order_id}")
            return CreateShipmentResult(
                ok=False, outcome="failed", order_id=order_id, error=f"Order store failure: {e}", error_kind="storage"
            )

    async def _create(self, order_id: str) -> CreateShipmentResult:
        order = self.store.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")

        if order.already_shipped():
            return await self._reuse(order)

        check_eligibility(order)

        profile = self.settings.profile(cod=order.is_cod)
        if profile is None:
            if order.is_cod:
                raise ConfigurationError(
                    "COD orders must ship under the COD-enabled credential profile, which is not configured"
                )
            raise ConfigurationError("Carrier credentials are not configured")

        shipment_key = order.shipping_reference_number or generate_cargo_key(order.id, order.created_at)
        field_names = await self.field_resolver.field_names() if order.is_cod else DEFAULT_FIELD_NAMES
        request = self.builder.build(order, shipment_key, field_names, profile)

        logger.info(f"Submitting shipment {shipment_key} for order {order.id} (profile={profile.name})")
        logger.debug(f"createShipment payload: {mask_payload(request.params)}")
        try:
            raw = await self.transport.call(CarrierService.DISPATCH, CREATE_SHIPMENT, request.params)
            outcome = read_create_result(raw)
        except (CarrierConnectionError, CarrierTransportError, MalformedResponseError) as e:
            self._record_failure(order, shipment_key, str(e), request.debug_fields)
            raise

        reused = outcome.is_duplicate
        if not reused and not outcome.is_success:
            message = f"Carrier rejected shipment: {outcome.describe()}"
            self._record_failure(order, shipment_key, message, {**request.debug_fields, **_diagnostics(outcome)})
            raise CarrierRejectedError(
                message, out_flag=outcome.out_flag, out_result=outcome.out_result, err_code=outcome.err_code
            )
        if reused:
            logger.info(f"Carrier already has shipment {shipment_key} for order {order.id}; treating as created")

        lookup: TrackingLookup | None = None
        try:
            lookup = await self.tracking.resolve(shipment_key, profile)
        except ShippingError as e:
            logger.warning(f"Tracking lookup after creating {shipment_key} failed: {e}")

        tracking_number = (lookup.tracking_number if lookup else None) or order.shipping_tracking_number
        target = ShipmentStatus.CREATED if tracking_number else ShipmentStatus.CREATED_PENDING_BARCODE
        status = advance(order.shipping_status, target)

        update: dict[str, Any] = {
            "shipping_carrier": CARRIER_NAME,
            "shipping_reference_number": shipment_key,
            "shipping_status": status,
            "shipping_error_message": None,
            **request.debug_fields,
            **_diagnostics(outcome),
        }
        if tracking_number:
            update["shipping_tracking_number"] = tracking_number
        label_url = (lookup.label_url if lookup else None) or outcome.label_url
        if label_url:
            update["shipping_label_url"] = label_url
        if order.is_cod and lookup is not None:
            update.update(self._cod_fields(order, lookup))

        self.store.update(order.id, update)
        logger.info(
            f"Shipment {shipment_key} for order {order.id}: status={status.value} "
            f"tracking={tracking_number or 'pending'} reused={reused}"
        )
        return CreateShipmentResult(
            ok=True,
            outcome="created" if status != ShipmentStatus.CREATED_PENDING_BARCODE else "pending_barcode",
            reused=reused,
            order_id=order.id,
            shipment_key=shipment_key,
            tracking_number=tracking_number,
            job_id=outcome.job_id,
            carrier_codes=outcome.carrier_codes(),
        )

    async def _reuse(self, order: Order) -> CreateShipmentResult:
        logger.info(
            f"Order {order.id} already shipped (tracking={order.shipping_tracking_number}, "
            f"status={order.shipping_status.value}); skipping creation"
        )
        if order.is_cod and not order.yurtici_cod_confirmed:
            try:
                await self.cod.reconcile(order)
            except ShippingError as e:
                logger.warning(f"COD backfill for {order.id} failed: {e}")
        return CreateShipmentResult(
            ok=True,
            outcome="already_done",
            reused=True,
            order_id=order.id,
            shipment_key=order.shipping_reference_number,
            tracking_number=order.shipping_tracking_number,
            job_id=order.yurtici_job_id,
        )

    @staticmethod
    def _cod_fields(order: Order, lookup: TrackingLookup) -> dict[str, Any]:
        doc_id = lookup.cod_doc_id or order.yurtici_cod_doc_id
        doc_type = lookup.cod_doc_type or order.yurtici_cod_doc_type
        return {
            "yurtici_cod_doc_id": doc_id,
            "yurtici_cod_doc_type": doc_type,
            "yurtici_cod_label_url": lookup.cod_label_url or order.yurtici_cod_label_url,
            "yurtici_cod_confirmed": bool(doc_id and doc_type),
            "yurtici_report_document_types": sorted(
                set(order.yurtici_report_document_types) | set(lookup.document_types)
            ),
        }

    def _record_failure(self, order: Order, shipment_key: str, message: str, extra: dict[str, Any]) -> None:
        update = {
            "shipping_reference_number": shipment_key,
            "shipping_status": advance(order.shipping_status, ShipmentStatus.CREATE_FAILED),
            "shipping_error_message": message,
            **extra,
        }
        self.store.update(order.id, update)
