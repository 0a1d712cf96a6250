from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SubscriptionStatus(StrEnum):
    active = "active"
    expiring = "expiring"
    expired = "expired"
    deleted = "deleted"


class SubscriptionResourceType(StrEnum):
    calendar_events = "calendar_events"
    online_meetings = "online_meetings"
    call_records = "call_records"


DEFAULT_RESOURCES: dict[SubscriptionResourceType, str] = {
    SubscriptionResourceType.calendar_events: "me/events",
    SubscriptionResourceType.online_meetings: "communications/onlineMeetings",
    SubscriptionResourceType.call_records: "communications/callRecords",
}

DEFAULT_CHANGE_TYPES: dict[SubscriptionResourceType, str] = {
    SubscriptionResourceType.calendar_events: "created,updated",
    SubscriptionResourceType.online_meetings: "created,updated",
    SubscriptionResourceType.call_records: "created",
}


class SubscriptionAction(StrEnum):
    list = "list"
    create = "create"
    status = "status"
    renew = "renew"
    delete = "delete"
    reconcile = "reconcile"


class SubscriptionResourceSpec(BaseModel):
    resource_type: SubscriptionResourceType
    resource: str | None = None
    change_type: str | None = None

    def resolved_resource(self) -> str:
        cleaned = (self.resource or "").strip().strip("/")
        return cleaned or DEFAULT_RESOURCES[self.resource_type]

    def resolved_change_type(self) -> str:
        cleaned = (self.change_type or "").strip()
        return cleaned or DEFAULT_CHANGE_TYPES[self.resource_type]


class Subscription(BaseModel):
    id: str
    resource_type: str | None = None
    resource: str
    change_type: str
    expiration_at: datetime
    status: SubscriptionStatus
    notification_url: str | None = None
    last_renewed_at: datetime | None = None
    last_error: str | None = None


class SubscriptionCommand(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    action: SubscriptionAction
    resource_type: SubscriptionResourceType | None = Field(default=None, alias="resourceType")
    resource: str | None = None
    change_type: str | None = Field(default=None, alias="changeType")
    subscription_id: str | None = Field(default=None, alias="subscriptionId")

    @model_validator(mode="after")
    def check_required_fields(self) -> "SubscriptionCommand":
        if self.action == SubscriptionAction.create and self.resource_type is None:
            raise ValueError("resourceType is required for action=create.")
        if (
            self.action in {SubscriptionAction.renew, SubscriptionAction.delete}
            and not (self.subscription_id or "").strip()
        ):
            raise ValueError(f"subscriptionId is required for action={self.action.value}.")
        return self


class SubscriptionReconcileReport(BaseModel):
    renewed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)


class SubscriptionCommandResponse(BaseModel):
    success: bool = True
    action: SubscriptionAction
    subscription: Subscription | None = None
    subscriptions: list[Subscription] | None = None
    report: SubscriptionReconcileReport | None = None
    message: str | None = None
