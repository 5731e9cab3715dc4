from typing import Optional

from fastapi import Depends, HTTPException, status

from app.core.features import get_tier_config, parse_tier, SubscriptionTier
from app.core.security import require_auth
from app.repositories.restaurant import RestaurantRepository


class RestaurantContext:
    """Request-scoped account context: who is acting on which restaurant.

    Built fresh from the store for every request, so tier and counters are
    never read from a stale cache.
    """

    def __init__(self, user: dict, restaurant: dict, role: str):
        self.user = user
        self.restaurant = restaurant
        self.restaurant_id = restaurant["id"]
        self.role = role
        self.is_owner = role == "owner"

    @property
    def user_id(self) -> str | None:
        return self.user.get("sub")

    @property
    def user_email(self) -> str | None:
        return self.user.get("email")

    @property
    def tier(self) -> SubscriptionTier:
        return parse_tier(self.restaurant.get("subscription_tier"))

    @property
    def tier_config(self):
        return get_tier_config(self.tier.value)

    def refresh(self) -> "RestaurantContext":
        """Re-read the restaurant row after a mutation."""
        fresh = RestaurantRepository.get_by_id(self.restaurant_id)
        if fresh:
            self.restaurant = fresh
        return self


def resolve_role(restaurant: dict, auth_payload: dict) -> str | None:
    """'owner' for the owning user, 'staff' for an authorized email, else None."""
    if restaurant.get("owner_id") and restaurant["owner_id"] == auth_payload.get("sub"):
        return "owner"
    email = (auth_payload.get("email") or "").lower()
    staff = [e.lower() for e in (restaurant.get("authorized_staff_emails") or [])]
    if email and email in staff:
        return "staff"
    return None


def load_restaurant_context(
    restaurant_id: str,
    auth_payload: dict,
    role: Optional[str] = None,
) -> RestaurantContext:
    """Load a restaurant and verify the caller may act on it.

    Raises:
        HTTPException 404 if the restaurant does not exist
        HTTPException 403 if the caller has no (or not the required) role
    """
    restaurant = RestaurantRepository.get_by_id(restaurant_id)
    if not restaurant:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Restaurant not found"
        )

    user_role = resolve_role(restaurant, auth_payload)
    if not user_role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You don't have access to this restaurant"
        )

    if role and user_role != role:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"This action requires '{role}' role"
        )

    return RestaurantContext(user=auth_payload, restaurant=restaurant, role=user_role)


def require_restaurant_access(role: Optional[str] = None):
    """Dependency factory to verify the user has access to a restaurant.

    Args:
        role: Optional required role ('owner' or 'staff').
              If None, any role is accepted.

    Returns:
        A FastAPI dependency function that returns RestaurantContext

    Example:
        @router.post("/{restaurant_id}/cards/{card_id}/go-live")
        def go_live(
            card_id: str,
            ctx: RestaurantContext = Depends(require_restaurant_access())
        ):
            pass
    """

    def dependency(
        restaurant_id: str,
        auth_payload: dict = Depends(require_auth),
    ) -> RestaurantContext:
        return load_restaurant_context(restaurant_id, auth_payload, role)

    return dependency


# Pre-configured dependency shortcuts
require_any_access = require_restaurant_access()
require_owner_access = require_restaurant_access(role="owner")
