import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from kargo.carrier.keys import generate_document_id
from kargo.carrier.schema import FieldNames, ResolvedField
from kargo.config import CarrierSettings, CredentialProfile
from kargo.models.order import Order

COLLECTION_TYPE_CASH = "0"
COLLECTION_TYPE_CARD = "1"


def normalize_phone(raw: str) -> str:
    """Turkish mobile number as the 10 digits the carrier expects (5XXXXXXXXX).

    Numbers that do not look like a Turkish mobile are passed on as bare digits.
    """
    digits = re.sub(r"\D", "", raw or "")
    national = digits
    if national.startswith("0"):
        national = national[1:]
    if national.startswith("90"):
        national = national[2:]
    if len(national) == 10 and national.startswith("5"):
        return national
    return digits


def collection_type_for(order: Order, settings: CarrierSettings) -> str:
    if settings.cod_cash_only:
        return COLLECTION_TYPE_CASH
    if order.shipping_payment_type == "cash":
        return COLLECTION_TYPE_CASH
    return COLLECTION_TYPE_CARD


@dataclass
class ShipmentRequest:
    params: dict[str, Any]
    shipment_key: str
    debug_fields: dict[str, Any] = field(default_factory=dict)


class ShipmentOrderBuilder:
    """Assembles the `createShipment` request for one order."""

    def __init__(self, settings: CarrierSettings):
        self.settings = settings

    def build(
        self,
        order: Order,
        shipment_key: str,
        field_names: FieldNames,
        profile: CredentialProfile,
    ) -> ShipmentRequest:
        shipping_order: dict[str, Any] = {
            "cargoKey": shipment_key,
            "invoiceKey": shipment_key,
            "receiverCustName": order.customer_name,
            "receiverAddress": order.address,
            "cityName": order.city,
            "townName": order.district,
            "receiverPhone1": normalize_phone(order.phone),
            "cargoCount": 1,
        }
        if order.email:
            shipping_order["emailAddress"] = order.email

        debug_fields: dict[str, Any] = {}
        if order.is_cod:
            cod_fields, debug_fields = self._cod_fields(order, field_names)
            shipping_order.update(cod_fields)

        params = {
            "wsUserName": profile.username,
            "wsPassword": profile.password,
            "userLanguage": profile.language,
            "ShippingOrderVO": [shipping_order],
        }
        return ShipmentRequest(params=params, shipment_key=shipment_key, debug_fields=debug_fields)

    def _cod_fields(self, order: Order, names: FieldNames) -> tuple[dict[str, Any], dict[str, Any]]:
        amount = Decimal(str(order.total_price)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        document_id = generate_document_id(order.id)
        collection_type = collection_type_for(order, self.settings)

        fields: dict[str, Any] = {}
        _put(fields, names.invoice_amount, amount)
        _put(fields, names.document_id, document_id)
        _put(fields, names.collection_type, collection_type)
        _put(fields, names.document_save_type, self.settings.document_save_type)

        selected_credit = credit_rule = None
        if collection_type == COLLECTION_TYPE_CARD and not self.settings.cod_cash_only:
            selected_credit = self.settings.selected_credit
            credit_rule = self.settings.credit_rule
            _put(fields, names.selected_credit, selected_credit)
            _put(fields, names.credit_rule, credit_rule)

        debug_fields = {
            "yurtici_tt_invoice_amount": float(amount),
            "yurtici_tt_document_id": document_id,
            "yurtici_tt_collection_type": collection_type,
            "yurtici_tt_document_save_type": self.settings.document_save_type,
            "yurtici_dc_selected_credit": selected_credit,
            "yurtici_dc_credit_rule": credit_rule,
        }
        return fields, debug_fields


def _put(fields: dict[str, Any], resolved: ResolvedField, value: Any) -> None:
    fields[resolved.name] = value
    if resolved.specified:
        fields[resolved.specified] = True
