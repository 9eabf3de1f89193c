"""
API Routes
"""
from fastapi import APIRouter

from taxibot.api.routes.analytics import router as analytics_router
from taxibot.api.routes.conversations import router as conversations_router
from taxibot.api.routes.provider_webhooks import router as provider_webhooks_router
from taxibot.api.routes.rides import router as rides_router
from taxibot.api.webhooks.machine import router as machine_router
from taxibot.api.webhooks.whatsapp_cloud import router as whatsapp_router

router = APIRouter()

router.include_router(rides_router, prefix="/rides", tags=["Rides"])
router.include_router(conversations_router, prefix="/conversations", tags=["Conversations"])
router.include_router(analytics_router, prefix="/analytics", tags=["Analytics"])
router.include_router(provider_webhooks_router, prefix="/settings/webhooks", tags=["Settings"])
router.include_router(whatsapp_router, prefix="/whatsapp", tags=["Webhooks"])
router.include_router(machine_router, prefix="/machine", tags=["Webhooks"])
