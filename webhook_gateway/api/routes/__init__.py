"""
API Routes
"""
from fastapi import APIRouter

from webhook_gateway.api.webhooks.providers import router as webhooks_router

router = APIRouter()

# Canonical webhook endpoint (documented)
router.include_router(webhooks_router, prefix="/webhook", tags=["webhooks"])

# Providers configured with the plural path
router.include_router(
    webhooks_router,
    prefix="/webhooks",
    tags=["webhooks"],
    include_in_schema=False
)
