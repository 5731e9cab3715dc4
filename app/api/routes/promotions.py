from fastapi import APIRouter, Depends, HTTPException

from app.core.entitlements import LimitExceededError, can_perform_action, ensure_can_go_live
from app.core.features import get_limit
from app.core.permissions import RestaurantContext, require_any_access
from app.domain.schemas import PromotionCreate, PromotionResponse, PromotionUpdate
from app.repositories.promotion import PromotionRepository
from app.services.audit import log_action

router = APIRouter()


def _get_promotion_or_404(ctx: RestaurantContext, promotion_id: str) -> dict:
    promotion = PromotionRepository.get_by_id(promotion_id)
    if not promotion or promotion["restaurant_id"] != ctx.restaurant_id:
        raise HTTPException(status_code=404, detail="Promotion not found")
    return promotion


@router.get("/{restaurant_id}/promotions", response_model=list[PromotionResponse])
def list_promotions(ctx: RestaurantContext = Depends(require_any_access)):
    return [PromotionResponse(**p) for p in PromotionRepository.get_all(ctx.restaurant_id)]


@router.post("/{restaurant_id}/promotions", response_model=PromotionResponse)
def create_promotion(
    data: PromotionCreate,
    ctx: RestaurantContext = Depends(require_any_access),
):
    """Create a promotion.

    Requesting ``status=active`` over the tier cap saves a draft instead and
    flags the response with ``downgraded_to_draft``.
    """
    fields = data.model_dump(mode="json", exclude={"status"})
    promotion = PromotionRepository.create(ctx.restaurant_id, **fields)
    if not promotion:
        raise HTTPException(status_code=500, detail="Failed to create promotion")

    if data.status != "active":
        return PromotionResponse(**promotion)

    limit = get_limit(ctx.tier.value, "promotions")
    allowed = can_perform_action(ctx.restaurant, "promotions")["allowed"]
    if allowed and PromotionRepository.activate(promotion["id"], ctx.restaurant_id, limit):
        log_action(ctx, "promotion_go_live", {"promotion_id": promotion["id"], "title": data.title})
        return PromotionResponse(**_get_promotion_or_404(ctx, promotion["id"]))

    return PromotionResponse(**promotion, downgraded_to_draft=True)


@router.put("/{restaurant_id}/promotions/{promotion_id}", response_model=PromotionResponse)
def update_promotion(
    promotion_id: str,
    data: PromotionUpdate,
    ctx: RestaurantContext = Depends(require_any_access),
):
    promotion = _get_promotion_or_404(ctx, promotion_id)
    if promotion.get("status") != "draft":
        raise HTTPException(status_code=409, detail="Only draft promotions can be edited")

    update_data = data.model_dump(mode="json", exclude_unset=True)
    if not update_data:
        return PromotionResponse(**promotion)

    updated = PromotionRepository.update(promotion_id, **update_data)
    if not updated:
        raise HTTPException(status_code=500, detail="Failed to update promotion")
    return PromotionResponse(**updated)


@router.post("/{restaurant_id}/promotions/{promotion_id}/go-live", response_model=PromotionResponse)
def go_live(promotion_id: str, ctx: RestaurantContext = Depends(require_any_access)):
    promotion = _get_promotion_or_404(ctx, promotion_id)
    if promotion.get("status") != "draft":
        raise HTTPException(status_code=409, detail="Promotion is not a draft")

    ensure_can_go_live(ctx.restaurant, "promotions")

    limit = get_limit(ctx.tier.value, "promotions")
    if not PromotionRepository.activate(promotion_id, ctx.restaurant_id, limit):
        raise LimitExceededError("promotions", can_perform_action(ctx.restaurant, "promotions"))

    log_action(ctx, "promotion_go_live", {"promotion_id": promotion_id, "title": promotion.get("title")})
    return PromotionResponse(**_get_promotion_or_404(ctx, promotion_id))


@router.delete("/{restaurant_id}/promotions/{promotion_id}")
def delete_promotion(promotion_id: str, ctx: RestaurantContext = Depends(require_any_access)):
    """Soft-delete a draft promotion."""
    promotion = _get_promotion_or_404(ctx, promotion_id)
    if promotion.get("status") != "draft":
        raise HTTPException(status_code=409, detail="Only draft promotions can be deleted")

    if not PromotionRepository.soft_delete(promotion_id):
        raise HTTPException(status_code=500, detail="Failed to delete promotion")

    log_action(ctx, "promotion_deleted", {"promotion_id": promotion_id, "title": promotion.get("title")})
    return {"message": "Promotion deleted"}
