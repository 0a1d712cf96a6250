import logging
from collections.abc import Callable
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import datetime

from graph_notifications.core.config import Settings
from graph_notifications.core.errors import PipelineError
from graph_notifications.services.gemini_summary_client import GeminiSummaryClient
from graph_notifications.services.graph_api_client import GraphApiClient
from graph_notifications.services.meeting_store import MeetingStore, create_meeting_store
from graph_notifications.services.meeting_summary_pipeline import MeetingSummaryPipeline
from graph_notifications.services.notification_dispatcher import NotificationDispatcher
from graph_notifications.services.notification_store import NotificationStore, create_notification_store
from graph_notifications.services.subscription_scheduler import SubscriptionScheduler
from graph_notifications.services.subscription_service import AlertHook, SubscriptionLifecycleManager
from graph_notifications.services.subscription_store import SubscriptionStore, create_subscription_store
from graph_notifications.services.webhook_service import GraphWebhookService

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    settings: Settings
    subscription_store: SubscriptionStore
    notification_store: NotificationStore
    meeting_store: MeetingStore
    graph_client: GraphApiClient | None
    summary_client: GeminiSummaryClient | None
    pipeline: MeetingSummaryPipeline
    dispatcher: NotificationDispatcher
    lifecycle_manager: SubscriptionLifecycleManager
    webhook_service: GraphWebhookService
    scheduler: SubscriptionScheduler

    def start(self) -> None:
        if self.settings.subscription_scheduler_enabled:
            self.scheduler.start()
        if self.settings.subscription_ensure_on_startup:
            try:
                created = self.lifecycle_manager.ensure_subscriptions()
            except PipelineError:
                logger.exception("Unable to ensure Graph subscriptions on startup")
            else:
                logger.info("Graph subscriptions ensured created=%s", len(created))

    def stop(self) -> None:
        self.scheduler.stop()
        self.dispatcher.shutdown(wait=False)


def build_graph_client(settings: Settings) -> GraphApiClient | None:
    if not settings.graph_access_token:
        return None
    return GraphApiClient(
        access_token=settings.graph_access_token,
        timeout_seconds=settings.graph_api_timeout_seconds,
        api_base_url=settings.graph_api_base_url,
    )


def build_summary_client(settings: Settings) -> GeminiSummaryClient | None:
    if not settings.gemini_api_key:
        return None
    return GeminiSummaryClient(
        api_key=settings.gemini_api_key,
        model=settings.gemini_model,
        timeout_seconds=settings.gemini_api_timeout_seconds,
        max_attempts=settings.summarization_max_attempts,
        backoff_seconds=settings.summarization_backoff_seconds,
    )


def build_runtime(
    settings: Settings,
    *,
    graph_client: GraphApiClient | None = None,
    summary_client: GeminiSummaryClient | None = None,
    executor: Executor | None = None,
    alert_hook: AlertHook | None = None,
    clock: Callable[[], datetime] | None = None,
) -> PipelineRuntime:
    subscription_store = create_subscription_store(
        store_name=settings.persistence_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_subscriptions_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )
    notification_store = create_notification_store(
        store_name=settings.persistence_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_collection_name=settings.mongodb_notifications_collection,
        mongodb_claims_collection_name=settings.mongodb_dedup_claims_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )
    meeting_store = create_meeting_store(
        store_name=settings.persistence_store,
        mongodb_uri=settings.mongodb_uri,
        mongodb_db_name=settings.mongodb_db_name,
        mongodb_meetings_collection_name=settings.mongodb_meetings_collection,
        mongodb_transcripts_collection_name=settings.mongodb_transcripts_collection,
        mongodb_summaries_collection_name=settings.mongodb_summaries_collection,
        mongodb_connect_timeout_ms=settings.mongodb_connect_timeout_ms,
    )
    graph_client = graph_client or build_graph_client(settings)
    summary_client = summary_client or build_summary_client(settings)

    pipeline = MeetingSummaryPipeline(
        settings=settings,
        meeting_store=meeting_store,
        graph_client=graph_client,
        summary_client=summary_client,
    )
    dispatcher = NotificationDispatcher(
        settings=settings,
        store=notification_store,
        pipeline=pipeline,
        executor=executor,
        clock=clock,
    )
    lifecycle_manager = SubscriptionLifecycleManager(
        settings=settings,
        store=subscription_store,
        graph_client=graph_client,
        alert_hook=alert_hook,
        clock=clock,
    )
    return PipelineRuntime(
        settings=settings,
        subscription_store=subscription_store,
        notification_store=notification_store,
        meeting_store=meeting_store,
        graph_client=graph_client,
        summary_client=summary_client,
        pipeline=pipeline,
        dispatcher=dispatcher,
        lifecycle_manager=lifecycle_manager,
        webhook_service=GraphWebhookService(
            settings=settings,
            subscription_store=subscription_store,
            dispatcher=dispatcher,
        ),
        scheduler=SubscriptionScheduler(
            settings=settings,
            lifecycle_manager=lifecycle_manager,
            dispatcher=dispatcher,
        ),
    )
