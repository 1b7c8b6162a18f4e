import logging
import sqlite3

from kargo.carrier.responses import CANCEL_RESULT_PATHS, flag, unwrap
from kargo.carrier.transport import CANCEL_SHIPMENT, CarrierService, CarrierTransport
from kargo.config import CarrierSettings
from kargo.errors import BusinessRuleError, CarrierRejectedError, ConfigurationError, NotFoundError
from kargo.models.order import Order, ShipmentStatus
from kargo.models.shipment import CancelResult
from kargo.storage.database import OrderStore

logger = logging.getLogger(__name__)


class ShipmentCancellation:
    def __init__(self, settings: CarrierSettings, store: OrderStore, transport: CarrierTransport):
        self.settings = settings
        self.store = store
        self.transport = transport

    async def cancel(self, order_id: str | None = None, shipment_key: str | None = None) -> CancelResult:
        """Cancel a shipment with the carrier, by order or by bare shipment key.

        Once the carrier has cancelled, a failure to record it on the order is
        logged and reported through `persisted`, not as a failed cancellation.
        """
        order: Order | None = None
        if order_id:
            order = self.store.get(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            shipment_key = shipment_key or order.shipping_reference_number
            if order.shipping_status == ShipmentStatus.CANCELED:
                return CancelResult(ok=True, shipment_key=shipment_key or "", persisted=True, message="Already cancelled")
            if order.shipping_status == ShipmentStatus.DELIVERED:
                raise BusinessRuleError("Delivered shipments cannot be cancelled")
        if not shipment_key:
            raise BusinessRuleError("No shipment key to cancel")

        profile = self.settings.profile(cod=order.is_cod) if order else self.settings.any_profile()
        if profile is None:
            raise ConfigurationError("Carrier credential profile is not configured")

        raw = await self.transport.call(
            CarrierService.DISPATCH,
            CANCEL_SHIPMENT,
            {
                "wsUserName": profile.username,
                "wsPassword": profile.password,
                "userLanguage": profile.language,
                "cargoKeys": [shipment_key],
            },
        )
        vo = unwrap(raw, CANCEL_RESULT_PATHS)
        out_flag = flag(vo.get("outFlag"))
        if out_flag != "0":
            out_result = flag(vo.get("outResult"))
            raise CarrierRejectedError(
                f"Carrier refused cancellation: {out_result or 'unknown error'}",
                out_flag=out_flag,
                out_result=out_result,
            )
        logger.info(f"Shipment {shipment_key} cancelled with carrier")

        persisted = False
        if order is not None:
            try:
                persisted = self.store.update(order.id, {"shipping_status": ShipmentStatus.CANCELED})
            except sqlite3.Error as e:
                logger.error(f"Shipment {shipment_key} cancelled but order {order.id} update failed: {e}")
        return CancelResult(ok=True, shipment_key=shipment_key, persisted=persisted, message="Shipment cancelled")
