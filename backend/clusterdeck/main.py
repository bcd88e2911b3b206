import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from clusterdeck import __version__
from clusterdeck.api.router import build_api_router
from clusterdeck.config import Settings, get_settings
from clusterdeck.core.errors import register_exception_handlers
from clusterdeck.core.logging import setup_logging
from clusterdeck.core.request_context import request_id_var
from clusterdeck.db import init_db
from clusterdeck.dependencies import AppServices, build_services
from clusterdeck.services.telemetry import telemetry_worker

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[Settings] = None, *, services: Optional[AppServices] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings)
    services = services or build_services(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("app.starting", env=settings.app_env)
        await init_db(services.engine)
        await services.vault.initialize(settings.vault_master_key)
        await services.vault.unseal(settings.vault_master_key)

        stop_event = asyncio.Event()
        telemetry_task = asyncio.create_task(
            telemetry_worker(
                stop_event,
                settings=settings,
                clusters=services.clusters,
                factory=services.factory,
            )
        )
        logger.info("app.started")

        yield

        logger.info("app.stopping")
        stop_event.set()
        try:
            await asyncio.wait_for(telemetry_task, timeout=10)
        except asyncio.TimeoutError:
            telemetry_task.cancel()
            logger.warning("app.telemetry_stop_timeout")
        services.vault.seal()
        await services.engine.dispose()
        logger.info("app.stopped")

    app = FastAPI(
        title="ClusterDeck API",
        description="Registers remote Kubernetes clusters and provisions credentialed resources into them",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.services = services

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers["X-Request-ID"] = request_id
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(build_api_router(settings.api_prefix))

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "vault_sealed": services.vault.sealed}

    return app
