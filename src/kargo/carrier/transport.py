"""SOAP transports for the carrier's dispatch and reporting services.

Two interchangeable implementations of `CarrierTransport`:

* `ZeepTransport` binds requests through the published WSDL with zeep.
* `RawXmlTransport` posts hand-built envelopes with httpx, keeping field names
  exactly as given. It exists for deployments where the structured binding
  drops the casing of carrier field names; it is opt-in via
  `YURTICI_RAW_XML_FALLBACK`.

Both return plain dicts and raise only `CarrierConnectionError`,
`CarrierTransportError` or `MalformedResponseError`.
"""

import asyncio
import logging
import re
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

import httpx
import zeep
import zeep.exceptions
from lxml import etree
from zeep.helpers import serialize_object
from zeep.transports import AsyncTransport

from kargo.carrier.masking import mask_envelope
from kargo.config import CarrierSettings
from kargo.errors import CarrierConnectionError, CarrierTransportError, MalformedResponseError

logger = logging.getLogger(__name__)

SOAP_ENV = "http://schemas.xmlsoap.org/soap/envelope/"

CREATE_SHIPMENT = "createShipment"
QUERY_SHIPMENT = "queryShipment"
CANCEL_SHIPMENT = "cancelShipment"
LIST_DOCUMENTS = "listInvDocumentInterfaceByReference"


class CarrierService(str, Enum):
    DISPATCH = "dispatch"
    REPORT = "report"


SERVICE_NAMESPACES = {
    CarrierService.DISPATCH: "http://yurticikargo.com.tr/ShippingOrderDispatcherServices",
    CarrierService.REPORT: "http://yurticikargo.com.tr/WsReportWithReferenceServices",
}


class CarrierTransport(Protocol):
    async def call(self, service: CarrierService, operation: str, params: dict[str, Any]) -> dict[str, Any]:
        ...

    async def element_names(self, service: CarrierService) -> set[str]:
        """Every element name the service's published schema declares."""
        ...

    async def aclose(self) -> None:
        ...


def wsdl_url(settings: CarrierSettings, service: CarrierService) -> str:
    if service == CarrierService.DISPATCH:
        return settings.dispatch_wsdl
    return settings.report_wsdl


def _as_mapping(result: Any, operation: str) -> dict[str, Any]:
    if result is None:
        raise MalformedResponseError(f"{operation}: empty response")
    if isinstance(result, dict):
        return result
    return {"return": result}


class ZeepTransport:
    def __init__(self, settings: CarrierSettings):
        self.settings = settings
        self._clients: dict[CarrierService, zeep.AsyncClient] = {}
        self._lock = asyncio.Lock()

    def _build_client(self, service: CarrierService) -> zeep.AsyncClient:
        transport = AsyncTransport(
            client=httpx.AsyncClient(timeout=self.settings.operation_timeout),
            wsdl_client=httpx.Client(timeout=self.settings.operation_timeout, follow_redirects=True),
        )
        return zeep.AsyncClient(
            wsdl_url(self.settings, service),
            transport=transport,
            settings=zeep.Settings(strict=False, xml_huge_tree=True),
        )

    async def _client(self, service: CarrierService) -> zeep.AsyncClient:
        async with self._lock:
            client = self._clients.get(service)
            if client is None:
                url = wsdl_url(self.settings, service)
                logger.info(f"Loading {service.value} WSDL from {url}")
                try:
                    client = await asyncio.to_thread(self._build_client, service)
                except (httpx.HTTPError, zeep.exceptions.Error, etree.XMLSyntaxError, OSError) as e:
                    raise CarrierConnectionError(f"Could not load {service.value} WSDL: {e}") from e
                self._clients[service] = client
            return client

    async def call(self, service: CarrierService, operation: str, params: dict[str, Any]) -> dict[str, Any]:
        client = await self._client(service)
        try:
            envelope = client.create_message(client.service, operation, **params)
        except (TypeError, ValueError, AttributeError, zeep.exceptions.Error) as e:
            raise CarrierTransportError(f"{operation}: request could not be bound to the schema: {e}") from e

        try:
            result = await client.service[operation](**params)
        except zeep.exceptions.Fault as e:
            raise CarrierTransportError(f"{operation} fault: {e.message}") from e
        except (httpx.HTTPError, zeep.exceptions.Error, etree.XMLSyntaxError) as e:
            raise CarrierTransportError(f"{operation} failed: {e}") from e
        finally:
            logger.debug(f"{operation} request envelope: {mask_envelope(envelope)}")

        return _as_mapping(serialize_object(result, target_cls=dict), operation)

    async def element_names(self, service: CarrierService) -> set[str]:
        client = await self._client(service)
        names: set[str] = set()
        for xsd_type in client.wsdl.types.types:
            for name, _element in getattr(xsd_type, "elements", None) or []:
                names.add(name)
        for element in client.wsdl.types.elements:
            names.add(element.qname.localname)
        return names

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.transport.aclose()
        self._clients.clear()


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def _append_fields(parent: etree._Element, fields: dict[str, Any]) -> None:
    for name, value in fields.items():
        if value is None:
            continue
        items = value if isinstance(value, list) else [value]
        for item in items:
            child = etree.SubElement(parent, name)
            if isinstance(item, dict):
                _append_fields(child, item)
            else:
                child.text = _text(item)


def _element_to_value(element: etree._Element) -> Any:
    children = [child for child in element if isinstance(child.tag, str)]
    if not children:
        return element.text
    result: dict[str, Any] = {}
    for child in children:
        name = etree.QName(child).localname
        value = _element_to_value(child)
        if name in result:
            if not isinstance(result[name], list):
                result[name] = [result[name]]
            result[name].append(value)
        else:
            result[name] = value
    return result


class RawXmlTransport:
    def __init__(self, settings: CarrierSettings, client: httpx.AsyncClient | None = None):
        self.settings = settings
        self._http = client or httpx.AsyncClient(timeout=settings.operation_timeout)

    def endpoint(self, service: CarrierService) -> str:
        return wsdl_url(self.settings, service).split("?", 1)[0]

    def build_envelope(self, service: CarrierService, operation: str, params: dict[str, Any]) -> bytes:
        namespace = SERVICE_NAMESPACES[service]
        envelope = etree.Element(f"{{{SOAP_ENV}}}Envelope", nsmap={"soapenv": SOAP_ENV, "ns": namespace})
        etree.SubElement(envelope, f"{{{SOAP_ENV}}}Header")
        body = etree.SubElement(envelope, f"{{{SOAP_ENV}}}Body")
        request = etree.SubElement(body, f"{{{namespace}}}{operation}")
        # Children stay unqualified, spelled exactly as the caller wrote them.
        _append_fields(request, params)
        return etree.tostring(envelope, xml_declaration=True, encoding="utf-8")

    def parse_response(self, content: bytes, operation: str, status_code: int) -> dict[str, Any]:
        try:
            root = etree.fromstring(content)
        except etree.XMLSyntaxError as e:
            raise MalformedResponseError(f"{operation}: response is not XML (HTTP {status_code})") from e

        body = root.find(f"{{{SOAP_ENV}}}Body")
        if body is None:
            raise MalformedResponseError(f"{operation}: response has no SOAP body")

        fault = body.find(f"{{{SOAP_ENV}}}Fault")
        if fault is not None:
            fault_string = fault.findtext("faultstring") or "unknown fault"
            raise CarrierTransportError(f"{operation} fault: {fault_string}")
        if status_code >= 400:
            raise CarrierTransportError(f"{operation} failed with HTTP {status_code}")

        payload = [child for child in body if isinstance(child.tag, str)]
        if not payload:
            raise MalformedResponseError(f"{operation}: empty SOAP body")
        return {etree.QName(payload[0]).localname: _element_to_value(payload[0])}

    async def call(self, service: CarrierService, operation: str, params: dict[str, Any]) -> dict[str, Any]:
        envelope = self.build_envelope(service, operation, params)
        try:
            response = await self._http.post(
                self.endpoint(service),
                content=envelope,
                headers={"Content-Type": "text/xml; charset=utf-8", "SOAPAction": '""'},
            )
        except httpx.ConnectError as e:
            raise CarrierConnectionError(f"Could not reach {service.value} endpoint: {e}") from e
        except httpx.HTTPError as e:
            raise CarrierTransportError(f"{operation} failed: {e}") from e
        finally:
            logger.debug(f"{operation} raw request envelope: {mask_envelope(envelope)}")

        return self.parse_response(response.content, operation, response.status_code)

    async def element_names(self, service: CarrierService) -> set[str]:
        try:
            response = await self._http.get(wsdl_url(self.settings, service), follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise CarrierConnectionError(f"Could not load {service.value} WSDL: {e}") from e
        return set(re.findall(r'name="([A-Za-z_][\w]*)"', response.text))

    async def aclose(self) -> None:
        await self._http.aclose()


def build_transport(settings: CarrierSettings) -> CarrierTransport:
    if settings.raw_xml_fallback:
        logger.warning("Raw XML transport enabled; SOAP requests bypass WSDL binding")
        return RawXmlTransport(settings)
    return ZeepTransport(settings)
