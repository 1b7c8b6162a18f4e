from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    """Liveness probe; reports which carrier environment and transport are in use."""
    carrier = request.app.state.shipping.settings.carrier
    return {
        "status": "ok",
        "carrier_environment": carrier.environment,
        "raw_xml_transport": carrier.raw_xml_fallback,
        "cod_profile_configured": carrier.profile(cod=True) is not None,
    }
