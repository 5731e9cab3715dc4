import json
from datetime import date, datetime
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


TierName = Literal["free", "basic", "premium", "enterprise"]
BillingTypeName = Literal["monthly", "metered"]


# ============================================
# Restaurant Schemas
# ============================================

class PreviousBillingState(BaseModel):
    """Subscription state a scheduled change replaced, restored when it is cancelled."""
    price_id: Optional[str] = None
    cancel_at_period_end: bool = False
    pending_plan_change: Optional[dict] = None
    plan_change_effective_date: Optional[str] = None
    stripe_metered_item_id: Optional[str] = None


class PendingPlanChange(BaseModel):
    """A tier/billing change scheduled for the next renewal."""
    tier: TierName
    billing_type: BillingTypeName = "monthly"
    previous: Optional[PreviousBillingState] = Field(default=None, exclude=True)


def parse_pending_change(value) -> Optional[PendingPlanChange]:
    """Read ``pending_plan_change`` from a row (JSONB, or legacy JSON string)."""
    if not value:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return PendingPlanChange(**value)


def pending_change_as_dict(value) -> Optional[dict]:
    """Normalize a stored ``pending_plan_change`` to a plain dict for JSONB."""
    if not value:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class RestaurantCreate(BaseModel):
    name: str
    slug: str = Field(..., pattern=r'^[a-z0-9-]+$', min_length=3, max_length=50)
    authorized_staff_emails: list[EmailStr] = []


class RestaurantUpdate(BaseModel):
    name: Optional[str] = None
    authorized_staff_emails: Optional[list[EmailStr]] = None


class RestaurantResponse(BaseModel):
    id: str
    name: str
    slug: str
    owner_id: Optional[str] = None
    authorized_staff_emails: list[str] = []
    subscription_tier: str = "free"
    subscription_status: Optional[str] = None
    billing_type: str = "monthly"
    subscription_started_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    pending_plan_change: Optional[PendingPlanChange] = None
    plan_change_effective_date: Optional[datetime] = None
    stripe_customer_id: Optional[str] = None
    notifications_sent_this_month: int = 0
    last_notification_reset: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict) -> "RestaurantResponse":
        data = dict(row)
        data["pending_plan_change"] = parse_pending_change(data.get("pending_plan_change"))
        data["authorized_staff_emails"] = data.get("authorized_staff_emails") or []
        return cls(**{k: v for k, v in data.items() if k in cls.model_fields})


# ============================================
# Entitlement Schemas
# ============================================

class EntitlementResponse(BaseModel):
    """Result of an entitlement check, in the dashboard's field names."""
    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    current: int = 0
    limit: Optional[int] = None
    message: str = ""
    requires_upgrade: bool = Field(default=False, alias="requiresUpgrade")
    suggested_tier: Optional[str] = Field(default=None, alias="suggestedTier")


class TierConfigResponse(BaseModel):
    max_live_cards: Optional[int] = None
    max_live_promotions: Optional[int] = None
    max_live_events: Optional[int] = None
    max_notifications_per_month: Optional[int] = None
    activation_fee: Optional[float] = None
    monthly_fee: Optional[float] = None
    included_months: int = 0
    display_name: str


class UsageResponse(BaseModel):
    tier: str
    limits: TierConfigResponse
    usage: dict[str, int]


class SubscriptionStatusResponse(BaseModel):
    tier: str
    display_name: str
    status: Optional[str] = None
    billing_type: str = "monthly"
    is_active: bool
    days_remaining: Optional[int] = None
    subscription_ends_at: Optional[datetime] = None
    pending_plan_change: Optional[PendingPlanChange] = None
    plan_change_effective_date: Optional[datetime] = None
    notifications_sent_this_month: int = 0
    next_notification_reset: datetime


class MonthlyResetResponse(BaseModel):
    reset: bool
    notifications_sent_this_month: int
    next_notification_reset: datetime


# ============================================
# Loyalty Card Schemas
# ============================================

class LoyaltyCardCreate(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    stamps_required: int = Field(default=10, ge=1, le=50)
    reward_description: Optional[str] = None
    design: dict = {}


class LoyaltyCardUpdate(BaseModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    stamps_required: Optional[int] = Field(default=None, ge=1, le=50)
    reward_description: Optional[str] = None
    design: Optional[dict] = None


class LoyaltyCardResponse(BaseModel):
    id: str
    restaurant_id: str
    display_name: str
    description: Optional[str] = None
    stamps_required: int = 10
    reward_description: Optional[str] = None
    design: dict = {}
    campaign_status: str = "draft"
    is_active: bool = False
    discovery_qr_code: Optional[str] = None
    campaign_start_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================
# Promotion & Event Schemas
# ============================================

class PromotionCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    loyalty_card_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    status: Literal["draft", "active"] = "draft"


class PromotionUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=150)
    description: Optional[str] = None
    loyalty_card_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None


class PromotionResponse(BaseModel):
    id: str
    restaurant_id: str
    title: str
    description: Optional[str] = None
    loyalty_card_id: Optional[str] = None
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    status: str = "draft"
    view_count: int = 0
    save_count: int = 0
    downgraded_to_draft: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class EventCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=150)
    description: Optional[str] = None
    loyalty_card_id: Optional[str] = None
    event_date: date
    status: Literal["draft", "active"] = "draft"


class EventUpdate(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=150)
    description: Optional[str] = None
    loyalty_card_id: Optional[str] = None
    event_date: Optional[date] = None


class EventResponse(BaseModel):
    id: str
    restaurant_id: str
    title: str
    description: Optional[str] = None
    loyalty_card_id: Optional[str] = None
    event_date: date
    status: str = "draft"
    interested_count: int = 0
    view_count: int = 0
    downgraded_to_draft: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


# ============================================
# Notification Schemas
# ============================================

class NotificationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=100)
    message: str = Field(..., min_length=1, max_length=500)
    notification_type: str = "general"
    scheduled_for: Optional[datetime] = None  # None = send now


class NotificationResponse(BaseModel):
    id: str
    restaurant_id: str
    title: str
    message: str
    notification_type: str = "general"
    scheduled_for: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    recipients_count: int = 0
    created_at: Optional[datetime] = None


# ============================================
# Billing Schemas (camelCase, as sent by the dashboard)
# ============================================

class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    plan_id: str = Field(..., alias="planId")
    restaurant_id: str = Field(..., alias="restaurantId")
    billing_type: BillingTypeName = Field(default="monthly", alias="billingType")


class BillingPortalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: Optional[str] = Field(default=None, alias="customerId")
    return_url: Optional[str] = Field(default=None, alias="returnUrl")


class GetSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    subscription_id: Optional[str] = Field(default=None, alias="subscriptionId")


class UpdateSubscriptionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    restaurant_id: str = Field(..., alias="restaurantId")
    new_tier: str = Field(..., alias="newTier")
    new_billing_type: str = Field(..., alias="newBillingType")


class CancelPendingChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    restaurant_id: str = Field(..., alias="restaurantId")


class ReportUsageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    restaurant_id: str = Field(..., alias="restaurantId")
    quantity: int = Field(..., gt=0)


class RedirectResponse(BaseModel):
    url: str


class NewPlan(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tier: str
    billing_type: str = Field(..., alias="billingType")


class UpdateSubscriptionResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: Optional[str] = None
    effective_date: datetime = Field(..., alias="effectiveDate")
    new_plan: NewPlan = Field(..., alias="newPlan")


class UsageRecord(BaseModel):
    id: str
    quantity: int


class ReportUsageResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: Optional[str] = None
    usage_record: Optional[UsageRecord] = Field(default=None, alias="usageRecord")


class SuccessResponse(BaseModel):
    success: bool = True
    message: str
