from fastapi import APIRouter, Depends

from graph_notifications.api.dependencies import get_runtime
from graph_notifications.schemas.health import HealthResponse
from graph_notifications.services.health_service import HealthService
from graph_notifications.services.runtime import PipelineRuntime

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def healthcheck(runtime: PipelineRuntime = Depends(get_runtime)) -> HealthResponse:
    service = HealthService(runtime)
    return service.get_status()
