import logging

from fastapi import APIRouter, Depends, HTTPException, status

from graph_notifications.api.dependencies import get_runtime, to_http_exception
from graph_notifications.core.errors import PipelineError
from graph_notifications.schemas.meeting import (
    Meeting,
    MeetingSummary,
    MeetingSummaryRequest,
    MeetingSummaryResponse,
    Transcript,
)
from graph_notifications.services.meeting_summary_pipeline import MeetingSummaryResult
from graph_notifications.services.runtime import PipelineRuntime

router = APIRouter(prefix="/meeting-summary", tags=["meeting-summary"])
logger = logging.getLogger(__name__)


@router.post("", response_model=MeetingSummaryResponse)
def create_meeting_summary(
    payload: MeetingSummaryRequest,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> MeetingSummaryResponse:
    logger.info(
        "Meeting summary requested meeting_id=%s call_record_id=%s auto_fetch=%s has_transcript=%s",
        payload.meeting_id,
        payload.call_record_id,
        payload.auto_fetch_transcript,
        bool(payload.transcript_text),
    )
    try:
        result = runtime.pipeline.run_request(
            meeting_id=payload.meeting_id,
            call_record_id=payload.call_record_id,
            client_id=payload.client_id,
            auto_fetch_transcript=payload.auto_fetch_transcript,
            transcript_text=payload.transcript_text,
        )
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    return _to_response(result)


@router.get("/{meeting_id}", response_model=MeetingSummaryResponse)
def get_meeting_summary(
    meeting_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> MeetingSummaryResponse:
    result = runtime.pipeline.get_latest(meeting_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No summary found for meeting {meeting_id}.",
        )
    return _to_response(result)


@router.post("/{meeting_id}/regenerate", response_model=MeetingSummaryResponse)
def regenerate_meeting_summary(
    meeting_id: str,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> MeetingSummaryResponse:
    try:
        result = runtime.pipeline.regenerate(meeting_id)
    except PipelineError as exc:
        raise to_http_exception(exc) from exc
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Meeting {meeting_id} was not found.",
        )
    logger.info("Meeting summary regenerated meeting_id=%s summary_id=%s", meeting_id, result.summary["id"])
    return _to_response(result)


def _to_response(result: MeetingSummaryResult) -> MeetingSummaryResponse:
    return MeetingSummaryResponse(
        meeting=Meeting.model_validate(result.meeting),
        transcript=Transcript.model_validate(result.transcript),
        summary=MeetingSummary.model_validate(result.summary),
        questionnaire=dict(result.summary.get("questionnaire") or {}),
    )
