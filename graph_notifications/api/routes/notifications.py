from fastapi import APIRouter, Depends, HTTPException, Query, status

from graph_notifications.api.dependencies import get_runtime, to_http_exception
from graph_notifications.core.errors import PipelineError
from graph_notifications.schemas.notification import (
    NotificationRecord,
    NotificationRecordsResponse,
    ProcessingState,
)
from graph_notifications.services.runtime import PipelineRuntime

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=NotificationRecordsResponse)
def list_notifications(
    state: ProcessingState | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    runtime: PipelineRuntime = Depends(get_runtime),
) -> NotificationRecordsResponse:
    records = runtime.notification_store.list_recent(
        limit=limit,
        state=state.value if state else None,
    )
    return NotificationRecordsResponse(
        items=[NotificationRecord.model_validate(record) for record in records],
    )


@router.post("/{notification_id}/retry", response_model=NotificationRecord)
def retry_notification(
    notification_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> NotificationRecord:
    try:
        record = runtime.dispatcher.retry(notification_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Notification {notification_id} was not found.",
        )
    return NotificationRecord.model_validate(record)
