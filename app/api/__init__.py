from fastapi import APIRouter

from .routes import (
    billing,
    cards,
    events,
    health,
    notifications,
    promotions,
    restaurants,
    subscription,
    webhooks,
)

api_router = APIRouter()

# Health check
api_router.include_router(health.router, tags=["health"])

# Restaurant management
api_router.include_router(restaurants.router, prefix="/restaurants", tags=["restaurants"])

# Restaurant-scoped, subscription-gated features
api_router.include_router(cards.router, prefix="/restaurants", tags=["cards"])
api_router.include_router(promotions.router, prefix="/restaurants", tags=["promotions"])
api_router.include_router(events.router, prefix="/restaurants", tags=["events"])
api_router.include_router(notifications.router, prefix="/restaurants", tags=["notifications"])
api_router.include_router(subscription.router, prefix="/restaurants", tags=["subscription"])

# Billing endpoints called by the dashboard, and Stripe's webhook
api_router.include_router(billing.router, prefix="/api", tags=["billing"])
api_router.include_router(webhooks.router, prefix="/api", tags=["webhooks"])
