from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import Settings, get_settings, validate_settings
from ..services import Services, build_services
from .access import authorize_request
from .routes import router

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """Build the API.  Passing *services* skips construction (and teardown) of the real ones."""
    settings = settings or (services.settings if services else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return
        validate_settings(settings)
        app.state.services = build_services(settings)
        logger.info("API started; scheduled sweeps run in the sweep worker process.")
        try:
            yield
        finally:
            await app.state.services.aclose()

    app = FastAPI(title="ReportSync API", version=__version__, lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def enforce_access_controls(request: Request, call_next):
        allowed, status_code, detail = authorize_request(
            request,
            api_token=settings.api_token,
            allow_localhost_without_token=settings.allow_localhost_without_token,
            auth_disabled=settings.auth_disabled,
        )
        if allowed:
            return await call_next(request)
        logger.warning(
            "Blocked request from host=%s path=%s (%d)",
            request.client.host if request.client else "",
            request.url.path,
            status_code,
        )
        return JSONResponse(status_code=status_code, content={"detail": detail})

    @app.exception_handler(RequestValidationError)
    async def bad_request(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400, content={"detail": jsonable_encoder(exc.errors())}
        )

    app.include_router(router)
    return app


def _configured_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    return create_app(settings)


app = _configured_app()


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "reportsync.api.app:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )
