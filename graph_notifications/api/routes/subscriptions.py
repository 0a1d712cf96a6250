import logging
from collections.abc import Mapping
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status

from graph_notifications.api.dependencies import get_runtime, to_http_exception
from graph_notifications.core.errors import PipelineError
from graph_notifications.schemas.subscription import (
    Subscription,
    SubscriptionAction,
    SubscriptionCommand,
    SubscriptionCommandResponse,
    SubscriptionResourceSpec,
)
from graph_notifications.services.runtime import PipelineRuntime

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


@router.post("", response_model=SubscriptionCommandResponse)
def run_subscription_command(
    command: SubscriptionCommand,
    runtime: PipelineRuntime = Depends(get_runtime),
) -> SubscriptionCommandResponse:
    manager = runtime.lifecycle_manager
    logger.info(
        "Subscription command received action=%s subscription_id=%s resource_type=%s",
        command.action.value,
        command.subscription_id,
        command.resource_type.value if command.resource_type else None,
    )
    try:
        if command.action == SubscriptionAction.list:
            records = manager.list()
            return SubscriptionCommandResponse(
                action=command.action,
                subscriptions=[_to_subscription(record) for record in records],
            )
        if command.action == SubscriptionAction.create:
            record = manager.create(
                SubscriptionResourceSpec(
                    resource_type=command.resource_type,
                    resource=command.resource,
                    change_type=command.change_type,
                ),
            )
            return SubscriptionCommandResponse(action=command.action, subscription=_to_subscription(record))
        if command.action == SubscriptionAction.reconcile:
            report = manager.reconcile_expiring()
            return SubscriptionCommandResponse(action=command.action, report=report)
        if command.action == SubscriptionAction.status:
            record = manager.status(command.subscription_id)
            if record is None and not command.subscription_id:
                return SubscriptionCommandResponse(
                    action=command.action,
                    message="No subscriptions are registered.",
                )
        elif command.action == SubscriptionAction.renew:
            record = manager.renew(command.subscription_id or "")
        else:
            record = manager.delete(command.subscription_id or "")
    except PipelineError as exc:
        raise to_http_exception(exc) from exc

    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Subscription {command.subscription_id} was not found.",
        )
    return SubscriptionCommandResponse(action=command.action, subscription=_to_subscription(record))


def _to_subscription(record: Mapping[str, Any]) -> Subscription:
    return Subscription.model_validate(dict(record))
