import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from kargo.config import load_settings
from kargo.routers import health, shipments
from kargo.services.context import ShippingContext, build_context
from kargo.tasks.scheduler import shutdown_scheduler, start_scheduler

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(shipping: ShippingContext | None = None, run_scheduler: bool = True) -> FastAPI:
    """Application factory; run with `uvicorn kargo.main:create_app --factory`."""
    shipping = shipping or build_context(load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info(f"Starting Kargo ({shipping.settings.carrier.environment} carrier environment)")
        shipping.store.init_db()
        if run_scheduler:
            start_scheduler(shipping)
        yield
        # Shutdown
        if run_scheduler:
            shutdown_scheduler()
        await shipping.aclose()
        logger.info("Kargo shutdown")

    app = FastAPI(title="Kargo", lifespan=lifespan)
    app.state.shipping = shipping

    app.include_router(health.router)
    app.include_router(shipments.router, prefix="/shipments")
    return app
