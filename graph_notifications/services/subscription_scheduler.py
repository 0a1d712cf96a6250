import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from graph_notifications.core.config import Settings
from graph_notifications.services.notification_dispatcher import NotificationDispatcher
from graph_notifications.services.subscription_service import SubscriptionLifecycleManager

logger = logging.getLogger(__name__)

RENEWAL_SWEEP_JOB_ID = "graph_subscription_renewal_sweep"
LEASE_REAPER_JOB_ID = "notification_lease_reaper"


class SubscriptionScheduler:
    """Background jobs for the renewal sweep and the processing deadline reaper."""

    def __init__(
        self,
        settings: Settings,
        lifecycle_manager: SubscriptionLifecycleManager,
        dispatcher: NotificationDispatcher,
    ) -> None:
        self.settings = settings
        self.lifecycle_manager = lifecycle_manager
        self.dispatcher = dispatcher
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        if self.running:
            return
        reaper_interval_seconds = max(5.0, min(60.0, self.settings.notification_processing_deadline_seconds / 4))
        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_renewal_sweep,
            trigger=IntervalTrigger(minutes=self.settings.subscription_sweep_interval_minutes),
            id=RENEWAL_SWEEP_JOB_ID,
            name="Renew expiring Graph subscriptions",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=300,
        )
        scheduler.add_job(
            self.run_lease_reaper,
            trigger=IntervalTrigger(seconds=reaper_interval_seconds),
            id=LEASE_REAPER_JOB_ID,
            name="Expire stale notification leases",
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "Subscription scheduler started sweep_interval_minutes=%s reaper_interval_seconds=%.0f",
            self.settings.subscription_sweep_interval_minutes,
            reaper_interval_seconds,
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("Subscription scheduler stopped")

    def run_renewal_sweep(self) -> None:
        try:
            self.lifecycle_manager.reconcile_expiring()
        except Exception:
            logger.exception("Subscription renewal sweep failed")

    def run_lease_reaper(self) -> None:
        try:
            expired = self.dispatcher.expire_stale_leases()
        except Exception:
            logger.exception("Notification lease reaper failed")
            return
        if expired:
            logger.warning("Expired notification leases count=%s", len(expired))
