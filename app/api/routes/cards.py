import secrets

from fastapi import APIRouter, Depends, HTTPException

from app.core.entitlements import LimitExceededError, can_perform_action, ensure_can_go_live
from app.core.features import get_limit
from app.core.permissions import RestaurantContext, require_any_access
from app.domain.schemas import LoyaltyCardCreate, LoyaltyCardResponse, LoyaltyCardUpdate
from app.repositories.loyalty_card import LoyaltyCardRepository
from app.services.audit import log_action

router = APIRouter()


def _get_card_or_404(ctx: RestaurantContext, card_id: str) -> dict:
    card = LoyaltyCardRepository.get_by_id(card_id)
    if not card or card["restaurant_id"] != ctx.restaurant_id:
        raise HTTPException(status_code=404, detail="Card not found")
    return card


def generate_discovery_qr_code(slug: str) -> str:
    """Unique code customers scan to discover a live card."""
    return f"{slug}-{secrets.token_hex(6)}"


@router.get("/{restaurant_id}/cards", response_model=list[LoyaltyCardResponse])
def list_cards(ctx: RestaurantContext = Depends(require_any_access)):
    return [LoyaltyCardResponse(**c) for c in LoyaltyCardRepository.get_all(ctx.restaurant_id)]


@router.post("/{restaurant_id}/cards", response_model=LoyaltyCardResponse)
def create_card(
    data: LoyaltyCardCreate,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Create a loyalty card. New cards are drafts on every tier."""
    card = LoyaltyCardRepository.create(restaurant_id=ctx.restaurant_id, **data.model_dump())
    if not card:
        raise HTTPException(status_code=500, detail="Failed to create card")
    return LoyaltyCardResponse(**card)


@router.get("/{restaurant_id}/cards/{card_id}", response_model=LoyaltyCardResponse)
def get_card(card_id: str, ctx: RestaurantContext = Depends(require_any_access)):
    return LoyaltyCardResponse(**_get_card_or_404(ctx, card_id))


@router.put("/{restaurant_id}/cards/{card_id}", response_model=LoyaltyCardResponse)
def update_card(
    card_id: str,
    data: LoyaltyCardUpdate,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Edit a draft card. Live cards are frozen."""
    card = _get_card_or_404(ctx, card_id)
    if card.get("is_active"):
        raise HTTPException(status_code=409, detail="Live cards cannot be edited")

    update_data = data.model_dump(exclude_unset=True)
    if not update_data:
        return LoyaltyCardResponse(**card)

    updated = LoyaltyCardRepository.update(card_id, **update_data)
    if not updated:
        raise HTTPException(status_code=500, detail="Failed to update card")
    return LoyaltyCardResponse(**updated)


@router.post("/{restaurant_id}/cards/{card_id}/go-live", response_model=LoyaltyCardResponse)
def go_live(card_id: str, ctx: RestaurantContext = Depends(require_any_access)):
    """Make a draft card live, within the tier's live-card limit."""
    card = _get_card_or_404(ctx, card_id)
    if card.get("is_active"):
        raise HTTPException(status_code=409, detail="Card is already live")

    ensure_can_go_live(ctx.restaurant, "cards")

    qr_code = generate_discovery_qr_code(ctx.restaurant["slug"])
    activated = LoyaltyCardRepository.activate(
        card_id, ctx.restaurant_id, get_limit(ctx.tier.value, "cards"), qr_code
    )
    if not activated:
        # Another request took the last slot between the check and the write
        raise LimitExceededError("cards", can_perform_action(ctx.restaurant, "cards"))

    log_action(ctx, "card_go_live", {"card_id": card_id, "display_name": card.get("display_name")})
    return LoyaltyCardResponse(**_get_card_or_404(ctx, card_id))


@router.delete("/{restaurant_id}/cards/{card_id}")
def delete_card(card_id: str, ctx: RestaurantContext = Depends(require_any_access)):
    """Soft-delete a draft card."""
    card = _get_card_or_404(ctx, card_id)
    if card.get("is_active"):
        raise HTTPException(status_code=409, detail="Live cards cannot be deleted")

    if not LoyaltyCardRepository.soft_delete(card_id):
        raise HTTPException(status_code=500, detail="Failed to delete card")

    log_action(ctx, "card_deleted", {"card_id": card_id, "display_name": card.get("display_name")})
    return {"message": "Card deleted"}
