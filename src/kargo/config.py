from dataclasses import dataclass
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings

DISPATCH_WSDL_TEST = "https://testws.yurticikargo.com/KOPSWebServices/ShippingOrderDispatcherServices?wsdl"
DISPATCH_WSDL_LIVE = "https://ws.yurticikargo.com/KOPSWebServices/ShippingOrderDispatcherServices?wsdl"
REPORT_WSDL_TEST = "https://testws.yurticikargo.com/KOPSWebServices/WsReportWithReferenceServices?wsdl"
REPORT_WSDL_LIVE = "https://ws.yurticikargo.com/KOPSWebServices/WsReportWithReferenceServices?wsdl"


@dataclass(frozen=True)
class CredentialProfile:
    name: str
    username: str
    password: str
    language: str


class CarrierSettings(BaseSettings):
    environment: Literal["test", "live"] = "test"
    language: str = "TR"

    dispatch_wsdl_test: str = DISPATCH_WSDL_TEST
    dispatch_wsdl_live: str = DISPATCH_WSDL_LIVE
    report_wsdl_test: str = REPORT_WSDL_TEST
    report_wsdl_live: str = REPORT_WSDL_LIVE

    # Normal contract
    username: str = ""
    password: str = ""
    # COD-enabled contract
    cod_username: str = ""
    cod_password: str = ""

    # Carrier contract constants for collection documents
    document_save_type: str = "0"
    selected_credit: str = "1"
    credit_rule: str = "0"
    cod_cash_only: bool = False

    # Reporting service reference lookups
    report_reference_field: str = "INVOICE_KEY"
    inv_cust_id: str = ""

    raw_xml_fallback: bool = False
    operation_timeout: float = 30.0

    tracking_retry_attempts: int = 3
    tracking_retry_delay: float = 10.0

    model_config = {"env_prefix": "YURTICI_"}

    @property
    def dispatch_wsdl(self) -> str:
        return self.dispatch_wsdl_live if self.environment == "live" else self.dispatch_wsdl_test

    @property
    def report_wsdl(self) -> str:
        return self.report_wsdl_live if self.environment == "live" else self.report_wsdl_test

    def profile(self, cod: bool) -> CredentialProfile | None:
        """Resolve the credential profile for an order, or None if it is not configured."""
        if cod:
            name, username, password = "cod", self.cod_username, self.cod_password
        else:
            name, username, password = "normal", self.username, self.password
        if not username or not password:
            return None
        return CredentialProfile(name=name, username=username, password=password, language=self.language)

    def any_profile(self) -> CredentialProfile | None:
        """Any configured profile; lookups and queries work under either contract."""
        return self.profile(cod=False) or self.profile(cod=True)


class Settings(BaseSettings):
    internal_token: str
    data_dir: str = "/data"
    refresh_interval_minutes: int = 60
    carrier: CarrierSettings = Field(default_factory=CarrierSettings)

    model_config = {"env_prefix": "KARGO_"}


def load_settings() -> Settings:
    """Build the process-wide settings once, from the environment."""
    return Settings()
