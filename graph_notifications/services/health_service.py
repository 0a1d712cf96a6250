from datetime import UTC, datetime

from graph_notifications.schemas.health import HealthResponse
from graph_notifications.services.runtime import PipelineRuntime


class HealthService:
    def __init__(self, runtime: PipelineRuntime) -> None:
        self.runtime = runtime

    def get_status(self) -> HealthResponse:
        settings = self.runtime.settings
        return HealthResponse(
            status="ok",
            service=settings.app_name,
            timestamp=datetime.now(UTC),
            persistence_store=settings.persistence_store,
            graph_configured=self.runtime.graph_client is not None,
            summarization_configured=self.runtime.summary_client is not None,
            scheduler_running=self.runtime.scheduler.running,
        )
