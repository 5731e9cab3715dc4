"""
Billing endpoints called by the dashboard.

All take a JSON body in the dashboard's camelCase field names and answer
``{"error": message}`` on failure. Each one verifies the caller's access to
the restaurant being billed before touching Stripe.
"""
from fastapi import APIRouter, Depends, Request

from app.api.deps import get_billing_service
from app.core.errors import MissingCustomerId, NotFoundError
from app.core.permissions import load_restaurant_context
from app.core.security import require_auth
from app.domain.schemas import (
    BillingPortalRequest,
    CancelPendingChangeRequest,
    CheckoutRequest,
    GetSubscriptionRequest,
    RedirectResponse,
    ReportUsageRequest,
    ReportUsageResponse,
    SuccessResponse,
    UpdateSubscriptionRequest,
    UpdateSubscriptionResponse,
)
from app.repositories.restaurant import RestaurantRepository
from app.services.billing import BillingService, validate_subscription_id

router = APIRouter()


@router.post("/create-checkout", response_model=RedirectResponse)
def create_checkout(
    data: CheckoutRequest,
    request: Request,
    auth_payload: dict = Depends(require_auth),
    billing: BillingService = Depends(get_billing_service),
):
    """Start a hosted checkout for a plan's activation fee."""
    ctx = load_restaurant_context(data.restaurant_id, auth_payload, role="owner")
    session = billing.create_checkout(
        ctx.restaurant,
        data.plan_id,
        billing_type=data.billing_type,
        origin=request.headers.get("origin"),
    )
    return RedirectResponse(url=session["url"])


@router.post("/create-billing-portal", response_model=RedirectResponse)
def create_billing_portal(
    data: BillingPortalRequest,
    request: Request,
    auth_payload: dict = Depends(require_auth),
    billing: BillingService = Depends(get_billing_service),
):
    if not data.customer_id:
        raise MissingCustomerId()

    restaurant = RestaurantRepository.get_by_stripe_customer_id(data.customer_id)
    if not restaurant:
        raise NotFoundError("Restaurant not found")
    load_restaurant_context(restaurant["id"], auth_payload, role="owner")

    session = billing.create_billing_portal(
        data.customer_id,
        return_url=data.return_url,
        origin=request.headers.get("origin"),
    )
    return RedirectResponse(url=session["url"])


@router.post("/get-subscription")
def get_subscription(
    data: GetSubscriptionRequest,
    auth_payload: dict = Depends(require_auth),
    billing: BillingService = Depends(get_billing_service),
):
    """Return the raw Stripe subscription object."""
    subscription_id = validate_subscription_id(data.subscription_id)

    restaurant = RestaurantRepository.get_by_stripe_subscription_id(subscription_id)
    if not restaurant:
        raise NotFoundError("Subscription not found")
    load_restaurant_context(restaurant["id"], auth_payload)

    return billing.retrieve_subscription(subscription_id)


@router.post("/update-subscription", response_model=UpdateSubscriptionResponse)
def update_subscription(
    data: UpdateSubscriptionRequest,
    auth_payload: dict = Depends(require_auth),
    billing: BillingService = Depends(get_billing_service),
):
    """Schedule a plan change for the next renewal."""
    ctx = load_restaurant_context(data.restaurant_id, auth_payload, role="owner")
    result = billing.update_subscription(ctx.restaurant, data.new_tier, data.new_billing_type)
    return UpdateSubscriptionResponse(**result)


@router.post("/cancel-pending-change", response_model=SuccessResponse)
def cancel_pending_change(
    data: CancelPendingChangeRequest,
    auth_payload: dict = Depends(require_auth),
    billing: BillingService = Depends(get_billing_service),
):
    ctx = load_restaurant_context(data.restaurant_id, auth_payload, role="owner")
    return SuccessResponse(**billing.cancel_pending_change(ctx.restaurant))


@router.post("/report-stamp-usage", response_model=ReportUsageResponse, response_model_exclude_none=True)
def report_stamp_usage(
    data: ReportUsageRequest,
    auth_payload: dict = Depends(require_auth),
    billing: BillingService = Depends(get_billing_service),
):
    """Report stamps given out, for restaurants on metered billing."""
    ctx = load_restaurant_context(data.restaurant_id, auth_payload)
    return ReportUsageResponse(**billing.report_usage(ctx.restaurant, data.quantity))
