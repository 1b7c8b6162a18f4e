from dataclasses import dataclass

from kargo.carrier.schema import SchemaFieldResolver
from kargo.carrier.status import ShipmentStatusQuery
from kargo.carrier.tracking import TrackingNumberResolver
from kargo.carrier.transport import CarrierTransport, build_transport
from kargo.config import Settings
from kargo.services.cancellation import ShipmentCancellation
from kargo.services.cod import CODReconciler
from kargo.services.shipping import ShipmentCreationOrchestrator
from kargo.services.tracking import ShipmentTracker
from kargo.storage.database import OrderStore


@dataclass
class ShippingContext:
    """Everything the lifecycle flows share, built once per process."""

    settings: Settings
    store: OrderStore
    transport: CarrierTransport
    orchestrator: ShipmentCreationOrchestrator
    tracker: ShipmentTracker
    cod: CODReconciler
    cancellation: ShipmentCancellation

    async def aclose(self) -> None:
        await self.transport.aclose()


def build_context(
    settings: Settings,
    store: OrderStore | None = None,
    transport: CarrierTransport | None = None,
) -> ShippingContext:
    carrier = settings.carrier
    store = store or OrderStore(settings.data_dir)
    transport = transport or build_transport(carrier)

    tracking = TrackingNumberResolver(transport, carrier.report_reference_field, carrier.inv_cust_id)
    cod = CODReconciler(carrier, store, tracking)
    orchestrator = ShipmentCreationOrchestrator(
        carrier, store, transport, SchemaFieldResolver(transport), tracking, cod
    )
    tracker = ShipmentTracker(carrier, store, tracking, ShipmentStatusQuery(transport), cod)
    cancellation = ShipmentCancellation(carrier, store, transport)

    return ShippingContext(
        settings=settings,
        store=store,
        transport=transport,
        orchestrator=orchestrator,
        tracker=tracker,
        cod=cod,
        cancellation=cancellation,
    )
