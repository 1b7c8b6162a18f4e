"""Wire names for the collection-document (COD) fields of `createShipment`.

Carrier deployments publish these fields either camelCase (`ttInvoiceAmount`)
or upper snake case (`TT_INVOICE_AMOUNT`), and some toolchains also declare a
`<name>Specified` companion flag for optional primitives. The resolver reads
the published schema once and fixes the names for the life of the process.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable

from kargo.carrier.transport import CarrierService, CarrierTransport

logger = logging.getLogger(__name__)

# logical field -> (camelCase, UPPER_SNAKE)
FIELD_VARIANTS: dict[str, tuple[str, str]] = {
    "invoice_amount": ("ttInvoiceAmount", "TT_INVOICE_AMOUNT"),
    "document_id": ("ttDocumentId", "TT_DOCUMENT_ID"),
    "collection_type": ("ttCollectionType", "TT_COLLECTION_TYPE"),
    "document_save_type": ("ttDocumentSaveType", "TT_DOCUMENT_SAVE_TYPE"),
    "selected_credit": ("dcSelectedCredit", "DC_SELECTED_CREDIT"),
    "credit_rule": ("dcCreditRule", "DC_CREDIT_RULE"),
}

SPECIFIED_SUFFIX = "Specified"


@dataclass(frozen=True)
class ResolvedField:
    name: str
    specified: str | None = None


@dataclass(frozen=True)
class FieldNames:
    invoice_amount: ResolvedField
    document_id: ResolvedField
    collection_type: ResolvedField
    document_save_type: ResolvedField
    selected_credit: ResolvedField
    credit_rule: ResolvedField
    probed: bool = False

    def all_names(self) -> set[str]:
        names = set()
        for logical in FIELD_VARIANTS:
            field = getattr(self, logical)
            names.add(field.name)
            if field.specified:
                names.add(field.specified)
        return names


DEFAULT_FIELD_NAMES = FieldNames(
    **{logical: ResolvedField(name=camel) for logical, (camel, _upper) in FIELD_VARIANTS.items()}
)


def resolve_field_names(schema_names: Iterable[str]) -> FieldNames:
    """Pick the concrete wire name of every COD field from a schema's element names.

    camelCase wins when both variants exist, then the upper snake variant, then
    the camelCase default. A companion flag is used only if the schema has one.
    """
    available = set(schema_names)
    resolved = {}
    for logical, (camel, upper) in FIELD_VARIANTS.items():
        if camel in available or upper not in available:
            name = camel
        else:
            name = upper
        specified = f"{name}{SPECIFIED_SUFFIX}"
        resolved[logical] = ResolvedField(name=name, specified=specified if specified in available else None)
    return FieldNames(**resolved, probed=True)


class SchemaFieldResolver:
    """Resolves COD field names once per process, falling back to defaults."""

    def __init__(self, transport: CarrierTransport):
        self.transport = transport
        self._names: FieldNames | None = None
        self._lock = asyncio.Lock()

    async def field_names(self) -> FieldNames:
        async with self._lock:
            if self._names is None:
                self._names = await self._probe()
            return self._names

    async def _probe(self) -> FieldNames:
        try:
            schema_names = await self.transport.element_names(CarrierService.DISPATCH)
        except Exception as e:
            logger.warning(f"Schema introspection failed, using default COD field names: {e}")
            return DEFAULT_FIELD_NAMES

        names = resolve_field_names(schema_names)
        logger.info(f"Resolved COD field names: {sorted(names.all_names())}")
        return names
