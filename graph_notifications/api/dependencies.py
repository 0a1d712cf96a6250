import logging
from threading import Lock

from fastapi import HTTPException, Request, status

from graph_notifications.core.config import get_settings
from graph_notifications.core.errors import (
    ConfigError,
    PersistenceError,
    PipelineError,
    SummarizationError,
    UpstreamError,
    ValidationError,
)
from graph_notifications.services.runtime import PipelineRuntime, build_runtime

logger = logging.getLogger(__name__)

_runtime_lock = Lock()


def get_runtime(request: Request) -> PipelineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is not None:
        return runtime
    with _runtime_lock:
        runtime = getattr(request.app.state, "runtime", None)
        if runtime is None:
            runtime = build_runtime(get_settings())
            request.app.state.runtime = runtime
    return runtime


def to_http_exception(exc: PipelineError) -> HTTPException:
    if isinstance(exc, (ConfigError, PersistenceError)):
        status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif isinstance(exc, (UpstreamError, SummarizationError)):
        status_code = status.HTTP_502_BAD_GATEWAY
    elif isinstance(exc, ValidationError):
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        status_code = status.HTTP_409_CONFLICT
    logger.warning(
        "Request failed reason=%s status_code=%s error=%s",
        exc.reason.value,
        status_code,
        exc,
    )
    return HTTPException(status_code=status_code, detail=str(exc))
