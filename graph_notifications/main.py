import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from graph_notifications.api.router import api_router
from graph_notifications.core.config import get_settings
from graph_notifications.services.runtime import PipelineRuntime, build_runtime


logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    _start_runtime(app)
    try:
        yield
    finally:
        _stop_runtime(app)


def create_application(runtime: PipelineRuntime | None = None) -> FastAPI:
    _configure_logging()
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        openapi_url=f"{settings.api_prefix}/openapi.json",
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        lifespan=lifespan,
    )
    # Built lazily on first use when not injected.
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)

    return app


def _start_runtime(app: FastAPI) -> None:
    runtime = app.state.runtime
    if runtime is None:
        runtime = build_runtime(get_settings())
        app.state.runtime = runtime
    logger.info(
        "Starting notification pipeline persistence_store=%s scheduler_enabled=%s",
        runtime.settings.persistence_store,
        runtime.settings.subscription_scheduler_enabled,
    )
    runtime.start()


def _stop_runtime(app: FastAPI) -> None:
    runtime = app.state.runtime
    if runtime is None:
        return
    logger.info("Stopping notification pipeline")
    runtime.stop()


app = create_application()
