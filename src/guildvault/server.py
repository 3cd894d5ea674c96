"""HTTP API for backup verification, structural restore and message replay."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import uvicorn
from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from guildvault.access import require_manage_server
from guildvault.audit import AuditLogger
from guildvault.auth import check_auth_config, get_auth_context
from guildvault.auth_models import AuthContext
from guildvault.config import Config, load_config
from guildvault.errors import ErrorCode, ErrorResponse, GuildVaultError
from guildvault.events import BackgroundDispatcher, EventBus, background, event_bus
from guildvault.exports import log_export
from guildvault.importer import MessageImporter
from guildvault.logging_setup import new_correlation_id, setup_logging
from guildvault.models import (
    ImportMessagesRequest,
    ImportMessagesResponse,
    LogExportRequest,
    RestoreServerRequest,
    RestoreServerResponse,
    VerifyExportRequest,
    VerifyExportResponse,
)
from guildvault.restore import StructuralRestorer
from guildvault.store import PlatformStore, create_store
from guildvault.verify import ManifestVerifier

logger = logging.getLogger("guildvault")

API_V1 = "/api/v1"


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Read or generate X-Correlation-ID, set contextvar, echo in response."""

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        cid = new_correlation_id(request.headers.get("X-Correlation-ID"))
        response = await call_next(request)
        response.headers["X-Correlation-ID"] = cid
        return response


def create_app(
    store: PlatformStore,
    config: Config | None = None,
    bus: EventBus | None = None,
    dispatcher: BackgroundDispatcher | None = None,
    manage_store: bool = False,
) -> FastAPI:
    """Create the FastAPI app wired to a platform store.

    With manage_store, the store is initialized on startup and closed on
    shutdown; otherwise the caller owns its lifecycle.
    """
    cfg = config or Config()
    bus = bus or event_bus
    dispatcher = dispatcher or background
    audit = AuditLogger(store, enabled=cfg.audit.enabled)

    verifier = ManifestVerifier(store)
    restorer = StructuralRestorer(store, audit, bus, dispatcher, cfg.limits)
    importer = MessageImporter(store, cfg.limits)

    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        if manage_store:
            await store.initialize()
        try:
            yield
        finally:
            await dispatcher.drain()
            if manage_store:
                await store.close()

    app = FastAPI(title="guildvault", lifespan=lifespan)
    app.state.cfg = cfg
    app.state.store = store
    app.state.audit = audit
    app.add_middleware(CorrelationIdMiddleware)

    @app.exception_handler(GuildVaultError)
    async def guildvault_error_handler(request: Request, exc: GuildVaultError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse.from_guildvault_error(exc).model_dump(),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        err = GuildVaultError(
            ErrorCode.VALIDATION_ERROR,
            "Request validation failed",
            details={"errors": [
                {"loc": list(e["loc"]), "msg": e["msg"], "type": e["type"]} for e in exc.errors()
            ]},
        )
        return JSONResponse(
            status_code=err.status_code,
            content=ErrorResponse.from_guildvault_error(err).model_dump(),
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error: %s", exc)
        return JSONResponse(status_code=500, content=ErrorResponse.internal().model_dump())

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.post(f"{API_V1}/exports/verify", response_model=VerifyExportResponse)
    async def verify_export(req: VerifyExportRequest):
        """Verify an Ed25519 signature over a manifest. No authentication required."""
        return await verifier.verify(req.manifest, req.signature)

    @app.post(f"{API_V1}/exports/log")
    async def log_export_route(req: LogExportRequest, auth: AuthContext = Depends(get_auth_context)):
        return await log_export(audit, auth.user_id, req)

    @app.post(f"{API_V1}/servers/{{server_id}}/restore", response_model=RestoreServerResponse)
    async def restore_server(
        server_id: uuid.UUID,
        req: RestoreServerRequest,
        auth: AuthContext = Depends(get_auth_context),
    ):
        return await restorer.restore(auth.user_id, server_id, req)

    @app.post(f"{API_V1}/channels/{{channel_id}}/import-messages", response_model=ImportMessagesResponse)
    async def import_messages(
        channel_id: uuid.UUID,
        req: ImportMessagesRequest,
        auth: AuthContext = Depends(get_auth_context),
    ):
        return await importer.import_batch(auth.user_id, channel_id, req.messages)

    @app.get(f"{API_V1}/servers/{{server_id}}/audit-log")
    async def server_audit_log(
        server_id: uuid.UUID,
        last: int = 50,
        auth: AuthContext = Depends(get_auth_context),
    ):
        await require_manage_server(store, server_id, auth.user_id)
        entries = await audit.read_recent(server_id, max(1, last))
        return {"status": "ok", "entries": [e.model_dump(mode="json") for e in entries]}

    return app


def run_server(config: Config | None = None) -> None:
    """Run the HTTP server with a store built from config."""
    if config is None:
        config = load_config()
    setup_logging(config)
    check_auth_config(config)
    store = create_store(config.store)
    app = create_app(store, config, manage_store=True)
    uvicorn.run(app, host=config.serve.host, port=config.serve.port)
