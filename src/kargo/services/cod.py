import logging

from kargo.carrier.tracking import TrackingNumberResolver
from kargo.config import CarrierSettings, CredentialProfile
from kargo.errors import (
    BusinessRuleError,
    CarrierConnectionError,
    CarrierTransportError,
    ConfigurationError,
    MalformedResponseError,
    NotFoundError,
)
from kargo.models.order import CodState, Order, ShipmentStatus
from kargo.models.shipment import CarrierDocument
from kargo.storage.database import OrderStore

logger = logging.getLogger(__name__)

RECONCILABLE_STATUSES = (
    ShipmentStatus.CREATED_PENDING_BARCODE,
    ShipmentStatus.CREATED,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.DELIVERED,
)


class CODReconciler:
    """Confirms that the carrier has issued the collection document of a COD order.

    Only the `yurtici_cod_*` fields are written; shipment status is never touched,
    so this is safe to run on every admin view of a COD order.
    """

    def __init__(self, settings: CarrierSettings, store: OrderStore, tracking: TrackingNumberResolver):
        self.settings = settings
        self.store = store
        self.tracking = tracking

    async def reconcile(self, order: Order | str) -> CodState:
        if isinstance(order, str):
            loaded = self.store.get(order)
            if loaded is None:
                raise NotFoundError(f"Order {order} not found")
            order = loaded

        if not order.is_cod:
            raise BusinessRuleError(f"Order {order.id} is not cash on delivery")
        if not order.shipping_reference_number or order.shipping_status not in RECONCILABLE_STATUSES:
            raise BusinessRuleError(f"Order {order.id} has no carrier shipment yet")

        profile = self.settings.profile(cod=True)
        if profile is None:
            raise ConfigurationError("COD credential profile is not configured")

        lookup = await self.tracking.resolve(order.shipping_reference_number, profile)
        collection = await self._collection_document(order, profile)

        if collection is not None:
            doc_id, doc_type, label_url = collection.doc_id, collection.doc_type, collection.label_url
        else:
            doc_id = lookup.cod_doc_id or order.yurtici_cod_doc_id
            doc_type = lookup.cod_doc_type or order.yurtici_cod_doc_type
            label_url = lookup.cod_label_url
        reported = sorted(set(order.yurtici_report_document_types) | set(lookup.document_types))
        state = CodState(
            collection_doc_id=doc_id,
            collection_doc_type=doc_type,
            collection_label_url=label_url or order.yurtici_cod_label_url,
            confirmed=bool(doc_id and doc_type),
            reported_document_types=reported,
        )

        self.store.update(
            order.id,
            {
                "yurtici_cod_doc_id": state.collection_doc_id,
                "yurtici_cod_doc_type": state.collection_doc_type,
                "yurtici_cod_label_url": state.collection_label_url,
                "yurtici_cod_confirmed": state.confirmed,
                "yurtici_report_document_types": state.reported_document_types,
            },
        )
        logger.info(
            f"COD reconcile for {order.id}: confirmed={state.confirmed} "
            f"doc={state.collection_doc_id} type={state.collection_doc_type}"
        )
        return state

    async def _collection_document(self, order: Order, profile: CredentialProfile) -> CarrierDocument | None:
        """The carrier's record of the collection document id we submitted, if it has one."""
        if not order.yurtici_tt_document_id:
            return None
        try:
            return await self.tracking.find_collection_document(order.yurtici_tt_document_id, profile)
        except (CarrierConnectionError, CarrierTransportError, MalformedResponseError) as e:
            logger.warning(f"Collection document lookup for {order.id} failed: {e}")
            return None
