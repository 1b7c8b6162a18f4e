import secrets

from fastapi import HTTPException, Request

from kargo.services.context import ShippingContext

INTERNAL_TOKEN_HEADER = "X-Internal-Token"


def get_shipping(request: Request) -> ShippingContext:
    return request.app.state.shipping


def verify_auth(request: Request) -> None:
    """Dependency to verify the caller holds the internal API token."""
    token = request.headers.get(INTERNAL_TOKEN_HEADER, "")
    expected = get_shipping(request).settings.internal_token
    if not token or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Not authenticated")
