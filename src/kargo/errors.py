class ShippingError(Exception):
    """Base class for every failure raised by the shipment lifecycle."""

    kind = "internal"


class ConfigurationError(ShippingError):
    """Missing endpoint/credentials or a wrong credential profile. Never a carrier outage."""

    kind = "configuration"


class AuthenticationError(ConfigurationError):
    """The carrier rejected our credentials."""


class BusinessRuleError(ShippingError):
    """The order is not in a state that allows the requested operation."""

    kind = "business"


class NotFoundError(ShippingError):
    kind = "not_found"


class CarrierConnectionError(ShippingError):
    """The WSDL could not be fetched or parsed. Retryable by the caller."""

    kind = "transport"


class CarrierTransportError(ShippingError):
    """The remote call itself failed."""

    kind = "transport"


class MalformedResponseError(ShippingError):
    """The response is missing the expected envelope. Not retryable."""

    kind = "transport"


class CarrierRejectedError(ShippingError):
    """The carrier answered with a non-zero result flag."""

    kind = "carrier"

    def __init__(self, message: str, out_flag: str = "", out_result: str = "", err_code: str = ""):
        super().__init__(message)
        self.out_flag = out_flag
        self.out_result = out_result
        self.err_code = err_code
