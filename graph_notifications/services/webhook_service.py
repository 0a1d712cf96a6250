import hmac
import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from graph_notifications.core.config import Settings
from graph_notifications.core.errors import ValidationError
from graph_notifications.schemas.notification import GraphNotificationItem, WebhookAcknowledgement
from graph_notifications.services.notification_dispatcher import DispatchStatus, NotificationDispatcher
from graph_notifications.services.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)


def extract_validation_token(query_params: Mapping[str, str], payload: Any = None) -> str | None:
    if "validationToken" in query_params:
        return query_params.get("validationToken") or ""
    if isinstance(payload, Mapping) and "validationToken" in payload:
        token = payload.get("validationToken")
        return "" if token is None else str(token)
    return None


class GraphWebhookService:
    def __init__(
        self,
        settings: Settings,
        subscription_store: SubscriptionStore,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.settings = settings
        self.subscription_store = subscription_store
        self.dispatcher = dispatcher

    def handle_batch(self, payload: Any) -> WebhookAcknowledgement:
        if not isinstance(payload, Mapping) or not isinstance(payload.get("value"), list):
            raise ValidationError("Notification payload must be an object with a 'value' list.")

        batch_client_state = payload.get("clientState")
        acknowledgement = WebhookAcknowledgement()
        for index, raw_item in enumerate(payload["value"]):
            try:
                item = GraphNotificationItem.model_validate(raw_item)
            except PydanticValidationError as exc:
                acknowledgement.dropped += 1
                logger.warning(
                    "Dropping malformed notification index=%s errors=%s",
                    index,
                    exc.error_count(),
                )
                continue

            subscription = self.subscription_store.get_by_id(item.subscription_id)
            if not self._client_state_matches(item, batch_client_state, subscription):
                acknowledgement.dropped += 1
                logger.warning(
                    "Dropping notification with mismatched clientState, possible spoofing subscription_id=%s resource=%s",
                    item.subscription_id,
                    item.resource,
                )
                continue

            result = self.dispatcher.dispatch(item, resource_type=(subscription or {}).get("resource_type"))
            if result.status == DispatchStatus.duplicate:
                acknowledgement.duplicates += 1
            else:
                acknowledgement.accepted += 1

        logger.info(
            "Webhook batch handled items=%s accepted=%s duplicates=%s dropped=%s",
            len(payload["value"]),
            acknowledgement.accepted,
            acknowledgement.duplicates,
            acknowledgement.dropped,
        )
        return acknowledgement

    def _client_state_matches(
        self,
        item: GraphNotificationItem,
        batch_client_state: Any,
        subscription: Mapping[str, Any] | None,
    ) -> bool:
        supplied = item.client_state
        if supplied is None and isinstance(batch_client_state, str):
            supplied = batch_client_state
        if not supplied:
            return False

        expected = (subscription or {}).get("client_state") or self.settings.graph_client_state
        if not expected:
            return False
        return hmac.compare_digest(supplied.encode("utf-8"), str(expected).encode("utf-8"))
