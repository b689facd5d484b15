"""Application factory for the credential and quota service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import register_admin_routes, register_auth_routes, register_health_route
from .config import ServiceConfig, load_config
from .errors import StoreError
from .ledger import QuotaLedger
from .security import CredentialManager
from .store import JsonFileStore, UserStore

logger = logging.getLogger("quotagate.service")


def _error_body(message: str, **extra: Any) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": False, "message": message}
    body.update(extra)
    return body


def _describe_validation_error(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    message = str(first.get("msg", "Invalid request"))
    if first.get("type") == "value_error":
        return message.removeprefix("Value error, ")
    location = [str(part) for part in first.get("loc", ()) if part != "body"]
    if location:
        return f"{'.'.join(location)}: {message}"
    return message


def register_error_handlers(app: FastAPI) -> None:
    """Render every failure as ``{"success": false, "message": ...}``."""

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(detail),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(_describe_validation_error(exc)),
        )

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("Storage failure while handling %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body("Internal server error"),
        )

    @app.exception_handler(Exception)
    async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled error while handling %s %s", request.method, request.url.path, exc_info=exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body("Internal server error"),
        )


def create_app(
    config: Optional[ServiceConfig] = None,
    *,
    store: Optional[UserStore] = None,
    credentials: Optional[CredentialManager] = None,
) -> FastAPI:
    """Instantiate the FastAPI application.

    Initialisation order: configuration, credential manager, store, ledger,
    routes. When the store is created here the data directory lock is taken
    before loading (so a corrupt document or a concurrently running writer
    aborts startup) and released on shutdown. A caller-supplied ``store`` is
    expected to be loaded already and stays owned by the caller.
    """

    cfg = config or load_config()

    credential_manager = credentials or CredentialManager(
        signing_secret=cfg.jwt_secret,
        admin_secret=cfg.admin_password,
        token_ttl=cfg.token_ttl,
    )

    owned_store: Optional[JsonFileStore] = None
    if store is None:
        owned_store = JsonFileStore(cfg.data_dir, default_quota=cfg.default_quota)
        owned_store.acquire()
        try:
            owned_store.load()
        except StoreError:
            owned_store.release()
            raise
        store = owned_store

    ledger = QuotaLedger(store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            yield
        finally:
            if owned_store is not None:
                owned_store.release()

    app = FastAPI(
        title="quotagate",
        version="0.1.0",
        description="Session credentials and message-quota metering for the chat client.",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.cors_origins),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = cfg
    app.state.store = store
    app.state.credentials = credential_manager
    app.state.ledger = ledger

    register_error_handlers(app)
    register_health_route(app)
    register_auth_routes(app, ledger, credential_manager)
    register_admin_routes(app, ledger, credential_manager)

    return app


__all__ = ["create_app", "register_error_handlers"]
