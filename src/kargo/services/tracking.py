import logging
import re
from datetime import datetime, timezone
from typing import Any

from kargo.carrier.status import ShipmentStatusQuery
from kargo.carrier.tracking import TrackingNumberResolver
from kargo.config import CarrierSettings, CredentialProfile
from kargo.errors import BusinessRuleError, ConfigurationError, NotFoundError, ShippingError
from kargo.models.order import ACTIVE_STATUSES, Order, ShipmentStatus, advance
from kargo.models.shipment import ShipmentStatusReport, TrackingRefreshResult
from kargo.services.cod import CODReconciler
from kargo.storage.database import OrderStore

logger = logging.getLogger(__name__)

CARRIER_BARCODE = re.compile(r"^\d{8,20}$")

STATUS_TARGETS = {
    "in_transit": ShipmentStatus.IN_TRANSIT,
    "delivered": ShipmentStatus.DELIVERED,
    "cancelled": ShipmentStatus.CANCELED,
}


class ShipmentTracker:
    """Follow-up flows after creation: barcode recovery and status refresh."""

    def __init__(
        self,
        settings: CarrierSettings,
        store: OrderStore,
        tracking: TrackingNumberResolver,
        status_query: ShipmentStatusQuery,
        cod: CODReconciler,
    ):
        self.settings = settings
        self.store = store
        self.tracking = tracking
        self.status_query = status_query
        self.cod = cod

    def _load(self, order_id: str) -> Order:
        order = self.store.get(order_id)
        if order is None:
            raise NotFoundError(f"Order {order_id} not found")
        return order

    def _profile(self, order: Order) -> CredentialProfile:
        profile = self.settings.profile(cod=order.is_cod)
        if profile is None:
            raise ConfigurationError(f"{'COD' if order.is_cod else 'Carrier'} credential profile is not configured")
        return profile

    async def refresh_tracking_number(self, order_id: str) -> TrackingRefreshResult:
        """Fetch the carrier barcode for an existing shipment. Never creates one."""
        order = self._load(order_id)
        if not order.shipping_reference_number:
            raise BusinessRuleError("No shipment key for this order; create the shipment first")

        existing = order.shipping_tracking_number
        if existing and CARRIER_BARCODE.match(existing):
            return TrackingRefreshResult(
                ok=True, order_id=order_id, tracking_number=existing, message="Tracking number already present"
            )
        if existing:
            logger.warning(f"Stored tracking value for {order_id} is not a carrier barcode, refetching")

        lookup, attempts = await self.tracking.resolve_with_retry(
            order.shipping_reference_number,
            self._profile(order),
            attempts=self.settings.tracking_retry_attempts,
            delay=self.settings.tracking_retry_delay,
        )
        if lookup is None or not lookup.tracking_number:
            return TrackingRefreshResult(
                ok=False,
                order_id=order_id,
                attempts=attempts,
                message="Shipment exists; the carrier issues the barcode after branch acceptance. Try again later.",
            )

        update: dict[str, Any] = {
            "shipping_tracking_number": lookup.tracking_number,
            "shipping_status": advance(order.shipping_status, ShipmentStatus.CREATED),
        }
        if lookup.label_url:
            update["shipping_label_url"] = lookup.label_url
        self.store.update(order_id, update)
        logger.info(f"Tracking number for {order_id} resolved after {attempts} attempt(s)")
        return TrackingRefreshResult(
            ok=True,
            order_id=order_id,
            tracking_number=lookup.tracking_number,
            attempts=attempts,
            message="Tracking number updated",
        )

    async def query_status(self, shipment_key: str) -> ShipmentStatusReport:
        """Status for a bare shipment key, without touching any order."""
        profile = self.settings.any_profile()
        if profile is None:
            raise ConfigurationError("Carrier credentials are not configured")
        return await self.status_query.query(shipment_key, profile)

    async def refresh_status(self, order_id: str, persist: bool = True) -> ShipmentStatusReport:
        order = self._load(order_id)
        if not order.shipping_reference_number:
            raise BusinessRuleError("No shipment key for this order")

        report = await self.status_query.query(order.shipping_reference_number, self._profile(order))
        if persist:
            self._apply_report(order, report)
        return report

    def _apply_report(self, order: Order, report: ShipmentStatusReport) -> None:
        update: dict[str, Any] = {}
        status = order.shipping_status

        if report.tracking_number and not order.shipping_tracking_number:
            update["shipping_tracking_number"] = report.tracking_number
            status = advance(status, ShipmentStatus.CREATED)

        target = STATUS_TARGETS.get(report.status)
        if target is not None:
            status = advance(status, target)

        if status != order.shipping_status:
            update["shipping_status"] = status
            now = datetime.now(timezone.utc)
            if status == ShipmentStatus.IN_TRANSIT and order.shipped_at is None:
                update["shipped_at"] = now
            if status == ShipmentStatus.DELIVERED:
                update["delivered_at"] = now
                if order.shipped_at is None:
                    update["shipped_at"] = now
        elif target is not None and target != status:
            logger.warning(
                f"Ignoring carrier status {report.code} for {order.id}: "
                f"cannot move from {order.shipping_status.value} to {target.value}"
            )

        if update:
            self.store.update(order.id, update)
            logger.info(f"Order {order.id} shipment updated: {update}")

    async def update_all_shipments(self) -> dict:
        """Refresh every active shipment."""
        updated = 0
        failed = 0

        for order in self.store.list_by_shipping_status(ACTIVE_STATUSES):
            try:
                if order.shipping_status == ShipmentStatus.CREATED_PENDING_BARCODE:
                    lookup = await self.tracking.resolve(order.shipping_reference_number, self._profile(order))
                    if lookup.tracking_number:
                        update: dict[str, Any] = {
                            "shipping_tracking_number": lookup.tracking_number,
                            "shipping_status": ShipmentStatus.CREATED,
                        }
                        if lookup.label_url:
                            update["shipping_label_url"] = lookup.label_url
                        self.store.update(order.id, update)
                else:
                    await self.refresh_status(order.id)

                if order.is_cod and not order.yurtici_cod_confirmed:
                    await self.cod.reconcile(order.id)
                updated += 1
            except ShippingError as e:
                failed += 1
                logger.error(f"Refreshing shipment for {order.id} failed: {e}")

        return {"updated": updated, "failed": failed}
