import uvicorn
from fastapi import FastAPI

from paycore.api.routes.access import router as access_router
from paycore.api.routes.health import router as health_router
from paycore.api.routes.internal_billing import router as internal_billing_router
from paycore.api.routes.payments import router as payments_router
from paycore.api.routes.provider_webhook import router as provider_webhook_router
from paycore.core.config import get_settings
from paycore.core.logging import configure_logging


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title="Payments Reconciliation Core API",
        version="0.1.0",
        docs_url="/docs" if settings.app_env != "prod" else None,
        redoc_url="/redoc" if settings.app_env != "prod" else None,
    )
    app.include_router(health_router)
    app.include_router(payments_router)
    app.include_router(provider_webhook_router)
    app.include_router(access_router)
    app.include_router(internal_billing_router)
    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    uvicorn.run(
        "paycore.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.app_env == "dev",
    )


if __name__ == "__main__":
    run()
