from functools import lru_cache

from app.services.billing import BillingService, create_billing_service


@lru_cache
def get_billing_service() -> BillingService:
    return create_billing_service()
