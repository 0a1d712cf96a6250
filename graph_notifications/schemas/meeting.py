from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Meeting(BaseModel):
    id: str
    teams_id: str
    subject: str | None = None
    calendar_type: str | None = None
    client_id: str | None = None
    client_reference: str | None = None
    join_web_url: str | None = None


class Transcript(BaseModel):
    id: str
    meeting_id: str
    source: str
    content: str
    language: str
    fetched_at: datetime


class MeetingSummary(BaseModel):
    id: str
    meeting_id: str
    transcript_id: str
    summary_text: str
    summary_en: str | None = None
    summary_he: str | None = None
    language: str
    action_items: list[dict[str, Any]] = Field(default_factory=list)
    risks: list[str] = Field(default_factory=list)
    questionnaire_version: str | None = None
    model: str | None = None
    created_at: datetime


class MeetingSummaryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meeting_id: str | None = Field(default=None, alias="meetingId")
    call_record_id: str | None = Field(default=None, alias="callRecordId")
    client_id: str | None = Field(default=None, alias="clientId")
    auto_fetch_transcript: bool = Field(default=True, alias="autoFetchTranscript")
    transcript_text: str | None = Field(default=None, alias="transcriptText")

    @model_validator(mode="after")
    def check_identifier(self) -> "MeetingSummaryRequest":
        meeting_id = (self.meeting_id or "").strip()
        call_record_id = (self.call_record_id or "").strip()
        if not meeting_id and not call_record_id:
            raise ValueError("Either meetingId or callRecordId is required.")
        if meeting_id and call_record_id:
            raise ValueError("Provide only one of meetingId or callRecordId.")
        if not (self.transcript_text or "").strip() and not self.auto_fetch_transcript:
            raise ValueError("transcriptText is required when autoFetchTranscript is false.")
        return self


class MeetingSummaryResponse(BaseModel):
    success: bool = True
    meeting: Meeting
    transcript: Transcript
    summary: MeetingSummary
    questionnaire: dict[str, Any]
