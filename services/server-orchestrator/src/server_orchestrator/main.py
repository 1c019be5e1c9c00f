"""Server Orchestrator - FastAPI service managing dynamic protocol servers."""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request
import structlog
import uvicorn

from shared.logging import clear_context, new_correlation_id, set_correlation_id, setup_logging

from . import routers
from .config import Settings, get_settings
from .dependencies import Services, build_services

logger = structlog.get_logger()


async def run_periodic_task(coro_func, interval: float, name: str):
    """Run a periodic task in an infinite loop."""
    logger.info("periodic_task_started", task=name, interval=interval)
    while True:
        try:
            await coro_func()
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("periodic_task_error", task=name, error=str(e), error_type=type(e).__name__)

        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            break
    logger.info("periodic_task_stopped", task=name)


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Build the API app.

    Passing ``services`` skips building them at startup (used by tests).
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        setup_logging(
            service_name=settings.service_name,
            log_format=settings.log_format,
            log_level=settings.log_level,
        )
        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)
        services: Services = app.state.services

        # Resources left by a previous orchestrator process have unknown owner tokens
        try:
            await services.lifecycle.sweep_orphans()
        except Exception as e:
            logger.error("startup_sweep_failed", error=str(e), error_type=type(e).__name__)

        tasks = [
            asyncio.create_task(
                run_periodic_task(
                    services.discovery.reconcile,
                    interval=settings.discovery_reconcile_interval,
                    name="discovery_reconcile",
                )
            ),
            asyncio.create_task(
                run_periodic_task(
                    services.lifecycle.sweep_orphans,
                    interval=settings.orphan_sweep_interval,
                    name="orphan_sweep",
                )
            ),
        ]
        logger.info("server_orchestrator_started", namespace=settings.namespace)

        yield

        logger.info("shutdown_initiated")
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await services.close()
        logger.info("shutdown_complete")

    app = FastAPI(
        title="File Simulator Server Orchestrator",
        description="Dynamic FTP, SFTP and NAS server lifecycle",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    @app.middleware("http")
    async def correlation_middleware(request: Request, call_next):
        correlation_id = request.headers.get("X-Correlation-ID") or new_correlation_id()
        set_correlation_id(correlation_id, method=request.method, path=request.url.path)

        start = time.time()
        try:
            response = await call_next(request)
            duration_ms = (time.time() - start) * 1000

            if response.status_code >= 500:  # noqa: PLR2004
                logger.error(
                    "http_request_failed",
                    status_code=response.status_code,
                    duration_ms=round(duration_ms, 2),
                )
            else:
                logger.info(
                    "http_request", status_code=response.status_code, duration_ms=round(duration_ms, 2)
                )
            response.headers["X-Correlation-ID"] = correlation_id
            return response
        except Exception as e:
            duration_ms = (time.time() - start) * 1000
            logger.error(
                "http_request_exception",
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=round(duration_ms, 2),
                exc_info=True,
            )
            raise
        finally:
            clear_context()

    @app.get("/")
    async def root():
        """Root endpoint - API information."""
        return {
            "name": "File Simulator Server Orchestrator",
            "version": "0.1.0",
            "description": "Dynamic FTP, SFTP and NAS server lifecycle",
        }

    app.include_router(routers.health.router)
    app.include_router(routers.servers.router, prefix="/api")
    app.include_router(routers.discovery.router, prefix="/api")
    app.include_router(routers.configuration.router, prefix="/api")
    return app


app = create_app()


def run() -> None:
    """Console entry point."""
    settings = get_settings()
    uvicorn.run(app, host=settings.http_host, port=settings.http_port)
