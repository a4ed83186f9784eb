from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse

from .config import APP_VERSION, get_settings
from .observability import RequestTimingLoggingMiddleware, add_exception_handlers
from .routers import admin as admin_router
from .routers import checkin as checkin_router
from .routers import exports as exports_router
from .routers import health as health_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger = logging.getLogger("app")
    logger.info("starting base_url=%s event_id=%s", settings.base_url, settings.event_id or "not-set")
    for name in settings.insecure_defaults():
        logger.warning("%s is still the default value; tokens and admin calls can be forged", name)
    yield
    logger.info("shutting down")


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    application = FastAPI(title="QR Check-in Service", version=APP_VERSION, lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestTimingLoggingMiddleware)

    add_exception_handlers(application)

    # Routers
    application.include_router(health_router.router)
    application.include_router(checkin_router.router)
    application.include_router(admin_router.router)
    application.include_router(exports_router.router)

    @application.get("/", include_in_schema=False)
    def root() -> RedirectResponse:
        return RedirectResponse(url="/docs")

    return application


app = create_app()
