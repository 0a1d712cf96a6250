from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ProcessingState(StrEnum):
    received = "received"
    queued = "queued"
    processing = "processing"
    done = "done"
    failed = "failed"


class GraphNotificationItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    subscription_id: str = Field(alias="subscriptionId", min_length=1)
    change_type: str = Field(alias="changeType", min_length=1)
    resource: str | None = None
    resource_data: dict[str, Any] | None = Field(default=None, alias="resourceData")
    client_state: str | None = Field(default=None, alias="clientState")
    tenant_id: str | None = Field(default=None, alias="tenantId")

    @model_validator(mode="after")
    def check_resource_reference(self) -> "GraphNotificationItem":
        data_id = (self.resource_data or {}).get("id")
        if not (self.resource or "").strip() and not (isinstance(data_id, str) and data_id.strip()):
            raise ValueError("resource or resourceData.id is required.")
        return self


class WebhookAcknowledgement(BaseModel):
    success: bool = True
    accepted: int = 0
    duplicates: int = 0
    dropped: int = 0


class NotificationRecord(BaseModel):
    id: str
    subscription_id: str
    change_type: str
    resource: str | None = None
    resource_type: str | None = None
    resource_id: str
    dedup_key: str
    processing_state: ProcessingState
    failure_reason: str | None = None
    error: str | None = None
    attempts: int = 0
    meeting_id: str | None = None
    received_at: datetime
    updated_at: datetime | None = None


class NotificationRecordsResponse(BaseModel):
    items: list[NotificationRecord]
