from fastapi import APIRouter

from .routes import (
    admin,
    health,
    subscriptions,
    webhooks,
)

api_router = APIRouter()

# Health check
api_router.include_router(health.router, tags=["health"])

# Billing (bearer-authenticated)
api_router.include_router(subscriptions.router, prefix="/subscriptions", tags=["subscriptions"])

# Payment processor callbacks (signature-verified, no bearer auth)
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])

# Admin: billing reporting
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
