from datetime import datetime

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str
    timestamp: datetime
    persistence_store: str
    graph_configured: bool
    summarization_configured: bool
    scheduler_running: bool
