import re

from fastapi import APIRouter, Depends, HTTPException
from postgrest.exceptions import APIError

from app.core.permissions import RestaurantContext, require_any_access, require_owner_access
from app.core.security import require_auth
from app.domain.schemas import RestaurantCreate, RestaurantResponse, RestaurantUpdate
from app.repositories.audit_log import AuditLogRepository
from app.repositories.restaurant import RestaurantRepository

router = APIRouter()


@router.post("", response_model=RestaurantResponse)
def create_restaurant(data: RestaurantCreate, auth_payload: dict = Depends(require_auth)):
    """Create a restaurant owned by the current user, on the free tier."""
    if RestaurantRepository.get_by_slug(data.slug):
        raise HTTPException(status_code=400, detail="URL slug already taken")

    try:
        restaurant = RestaurantRepository.create(
            owner_id=auth_payload["sub"],
            name=data.name,
            slug=data.slug,
            authorized_staff_emails=[e.lower() for e in data.authorized_staff_emails],
        )
    except APIError as e:
        # Unique violation: slug claimed between the check and the insert
        if "23505" in str(e):
            raise HTTPException(status_code=400, detail="URL slug already taken")
        raise
    if not restaurant:
        raise HTTPException(status_code=500, detail="Failed to create restaurant")

    return RestaurantResponse.from_row(restaurant)


@router.get("", response_model=list[RestaurantResponse])
def list_my_restaurants(auth_payload: dict = Depends(require_auth)):
    """Restaurants the current user owns or works at."""
    rows = RestaurantRepository.list_for_user(auth_payload["sub"], auth_payload.get("email"))
    return [RestaurantResponse.from_row(r) for r in rows]


# Slug route MUST come before /{restaurant_id} to avoid path conflicts
@router.get("/slug/{slug}/available")
def check_slug_availability(slug: str):
    """Check if a URL slug is available (public, no auth required)."""
    if not slug or len(slug) < 3:
        return {"available": False, "reason": "Slug must be at least 3 characters"}

    if len(slug) > 50:
        return {"available": False, "reason": "Slug must be 50 characters or less"}

    if not re.match(r'^[a-z0-9-]+$', slug):
        return {"available": False, "reason": "Slug can only contain lowercase letters, numbers, and hyphens"}

    if RestaurantRepository.get_by_slug(slug):
        return {"available": False, "reason": "This URL is already taken"}

    return {"available": True}


@router.get("/{restaurant_id}", response_model=RestaurantResponse)
def get_restaurant(ctx: RestaurantContext = Depends(require_any_access)):
    return RestaurantResponse.from_row(ctx.restaurant)


@router.put("/{restaurant_id}", response_model=RestaurantResponse)
def update_restaurant(
    data: RestaurantUpdate,
    ctx: RestaurantContext = Depends(require_owner_access),
):
    """Update name or staff list (owner only)."""
    update_data = data.model_dump(exclude_unset=True)
    if "authorized_staff_emails" in update_data and update_data["authorized_staff_emails"] is not None:
        update_data["authorized_staff_emails"] = [e.lower() for e in update_data["authorized_staff_emails"]]
    if not update_data:
        return RestaurantResponse.from_row(ctx.restaurant)

    restaurant = RestaurantRepository.update(ctx.restaurant_id, **update_data)
    if not restaurant:
        raise HTTPException(status_code=500, detail="Failed to update restaurant")
    return RestaurantResponse.from_row(restaurant)


@router.get("/{restaurant_id}/audit-log")
def list_audit_log(
    limit: int = 50,
    ctx: RestaurantContext = Depends(require_owner_access),
):
    """Most recent staff actions (owner only)."""
    return AuditLogRepository.list_by_restaurant(ctx.restaurant_id, limit=min(limit, 200))
