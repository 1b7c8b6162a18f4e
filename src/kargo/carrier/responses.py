"""Helpers for reading carrier responses whose wrappers and field names drift."""

import re
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from kargo.errors import MalformedResponseError

CREATE_RESULT_PATHS = (
    ("ShippingOrderResultVO",),
    ("createShipmentReturn", "ShippingOrderResultVO"),
    ("createShipmentResponse", "ShippingOrderResultVO"),
    ("createShipmentResponse", "createShipmentReturn", "ShippingOrderResultVO"),
    ("createShipmentResult", "ShippingOrderResultVO"),
    ("return", "ShippingOrderResultVO"),
    ("result", "ShippingOrderResultVO"),
)
CREATE_DETAIL_KEYS = ("shippingOrderDetailVO", "shippingOrderDetailVo", "shippingOrderDetailVos")

CANCEL_RESULT_PATHS = (
    ("ShippingOrderResultVO",),
    ("cancelShipmentReturn",),
    ("cancelShipmentResponse", "ShippingOrderResultVO"),
    ("cancelShipmentResponse", "cancelShipmentReturn"),
    ("cancelShipmentResult",),
    ("return",),
    ("result",),
)

DUPLICATE_ERROR_CODE = "60020"
DUPLICATE_MESSAGE = re.compile(r"sistemde\s+mevcuttur", re.IGNORECASE)
JOB_ID_MESSAGE = re.compile(r"(\d+)\s*talep\s*nolu", re.IGNORECASE)


def dig(data: Any, path: Sequence[str]) -> Any:
    current = data
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def unwrap(raw: dict[str, Any], paths: Iterable[Sequence[str]], marker: str = "outFlag") -> dict[str, Any]:
    """Find the result object under the first known wrapper that is present.

    Falls back to `raw` itself when it carries `marker` directly.
    """
    for path in paths:
        value = dig(raw, path)
        if isinstance(value, list):
            value = value[0] if value else None
        if isinstance(value, dict):
            return value
    if isinstance(raw, dict) and marker in raw:
        return raw
    raise MalformedResponseError(f"Expected result envelope not found (keys: {sorted(raw or {})})")


def as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def first_value(data: dict[str, Any] | None, names: Iterable[str]) -> str | None:
    """First non-empty value among synonym field names, as a string."""
    if not isinstance(data, dict):
        return None
    for name in names:
        value = data.get(name)
        if value not in (None, ""):
            return str(value).strip()
    return None


def flag(value: Any) -> str:
    return "" if value is None else str(value).strip()


@dataclass
class CreateOutcome:
    out_flag: str
    out_result: str
    err_code: str = ""
    err_message: str = ""
    job_id: int | None = None
    label_url: str | None = None

    @property
    def is_duplicate(self) -> bool:
        return self.err_code == DUPLICATE_ERROR_CODE or bool(DUPLICATE_MESSAGE.search(self.err_message))

    @property
    def has_detail_error(self) -> bool:
        return self.err_code not in ("", "0")

    @property
    def is_success(self) -> bool:
        return self.out_flag == "0" and not self.has_detail_error

    def describe(self) -> str:
        message = self.out_result
        if self.err_code and self.err_code != "0":
            message += f" (errCode:{self.err_code})"
        if self.err_message:
            message += f" - {self.err_message}"
        return message.strip(" -") or "Unknown carrier error"

    def carrier_codes(self) -> dict[str, str]:
        return {
            "outFlag": self.out_flag,
            "outResult": self.out_result,
            "errCode": self.err_code,
            "errMessage": self.err_message,
        }


def read_create_result(raw: dict[str, Any]) -> CreateOutcome:
    vo = unwrap(raw, CREATE_RESULT_PATHS)

    detail_raw = None
    for key in CREATE_DETAIL_KEYS:
        if vo.get(key) is not None:
            detail_raw = vo[key]
            break
    if isinstance(detail_raw, dict) and "shippingOrderDetailVO" in detail_raw:
        detail_raw = detail_raw["shippingOrderDetailVO"]
    details = [d for d in as_list(detail_raw) if isinstance(d, dict)]
    detail = details[0] if details else None

    out_result = flag(vo.get("outResult"))
    err_code = flag(detail.get("errCode")) if detail else ""
    err_message = flag(detail.get("errMessage")) if detail else ""

    job_id = None
    try:
        job_id = int(flag(vo.get("jobId")) or 0) or None
    except ValueError:
        job_id = None
    if job_id is None:
        match = JOB_ID_MESSAGE.search(err_message or out_result)
        if match:
            job_id = int(match.group(1))

    return CreateOutcome(
        out_flag=flag(vo.get("outFlag")),
        out_result=out_result,
        err_code=err_code,
        err_message=err_message,
        job_id=job_id,
        label_url=first_value(detail, ("labelUrl", "label_url", "labelURL")),
    )
