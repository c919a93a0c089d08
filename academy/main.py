import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from academy.api import enrollment_router, purchase_router, webhook_router
from academy.config import get_settings
from academy.db.session import SessionLocal
from academy.dependencies import Services, build_services
from academy.errors import ServiceError


def create_app(services: Services = None) -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if services is None:
        services = build_services(settings, SessionLocal)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Let in-flight notifications finish before the loop goes away
        await app.state.services.notifier.drain()

    app = FastAPI(title="Academy billing", lifespan=lifespan)
    app.state.services = services

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message, "code": exc.code},
        )

    app.include_router(webhook_router.router, prefix="/api")
    app.include_router(purchase_router.router, prefix="/api/purchase")
    app.include_router(enrollment_router.router, prefix="/api/enrollment")

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


app = create_app()
