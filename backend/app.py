from fastapi import FastAPI

from backend.apps.dunning.api_admin import public_router as opt_out_router
from backend.apps.dunning.api_admin import router as dunning_router
from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.health import router as health_router


def create_app() -> FastAPI:
    init_observability(enable_metrics=settings.enable_metrics)

    app = FastAPI(title="AR Cache & Dunning Engine")

    # Routers
    app.include_router(health_router)
    app.include_router(dunning_router)
    app.include_router(opt_out_router)

    return app


# ASGI app instance
app = create_app()
