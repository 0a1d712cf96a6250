from fastapi import APIRouter

from graph_notifications.api.routes.health import router as health_router
from graph_notifications.api.routes.meeting_summaries import router as meeting_summaries_router
from graph_notifications.api.routes.notifications import router as notifications_router
from graph_notifications.api.routes.subscriptions import router as subscriptions_router
from graph_notifications.api.routes.webhooks import router as webhooks_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

# Unversioned routes registered with Graph subscriptions already in place.
api_router.include_router(webhooks_router)
api_router.include_router(subscriptions_router)
api_router.include_router(meeting_summaries_router)
api_router.include_router(notifications_router)

v1_router.include_router(webhooks_router)
v1_router.include_router(subscriptions_router)
v1_router.include_router(meeting_summaries_router)
v1_router.include_router(notifications_router)
api_router.include_router(v1_router)
