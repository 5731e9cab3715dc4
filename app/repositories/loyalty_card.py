from datetime import datetime, timezone

from database.connection import get_db, with_retry


class LoyaltyCardRepository:

    @staticmethod
    @with_retry()
    def create(
        restaurant_id: str,
        display_name: str,
        description: str | None = None,
        stamps_required: int = 10,
        reward_description: str | None = None,
        design: dict | None = None,
    ) -> dict | None:
        """Create a loyalty card. Cards always start as drafts."""
        db = get_db()
        data = {
            "restaurant_id": restaurant_id,
            "display_name": display_name,
            "description": description,
            "stamps_required": stamps_required,
            "reward_description": reward_description,
            "design": design or {},
            "campaign_status": "draft",
            "is_active": False,
        }
        result = db.table("loyalty_cards").insert(data).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_id(card_id: str) -> dict | None:
        """Get a card by ID, excluding soft-deleted cards."""
        db = get_db()
        result = db.table("loyalty_cards").select("*").eq(
            "id", card_id
        ).is_("deleted_at", "null").limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_all(restaurant_id: str) -> list[dict]:
        """Get all non-deleted cards of a restaurant, newest first."""
        db = get_db()
        result = db.table("loyalty_cards").select("*").eq(
            "restaurant_id", restaurant_id
        ).is_("deleted_at", "null").order("created_at", desc=True).execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def update(card_id: str, **kwargs) -> dict | None:
        """Update a card."""
        db = get_db()
        kwargs["updated_at"] = datetime.now(timezone.utc).isoformat()
        result = db.table("loyalty_cards").update(kwargs).eq("id", card_id).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def soft_delete(card_id: str) -> bool:
        """Mark a draft card as deleted. Live cards are left untouched."""
        db = get_db()
        result = db.table("loyalty_cards").update({
            "deleted_at": datetime.now(timezone.utc).isoformat(),
        }).eq("id", card_id).eq("is_active", False).execute()
        return bool(result and result.data and len(result.data) > 0)

    @staticmethod
    @with_retry()
    def count_live(restaurant_id: str) -> int:
        """Count live (active, not deleted) cards for a restaurant."""
        db = get_db()
        result = db.table("loyalty_cards").select(
            "id", count="exact"
        ).eq("restaurant_id", restaurant_id).eq("is_active", True).is_("deleted_at", "null").execute()
        return result.count if result and result.count is not None else 0

    @staticmethod
    @with_retry()
    def activate(card_id: str, restaurant_id: str, limit: int | None, qr_code: str) -> bool:
        """Make a draft card live if the live-card count is still under ``limit``."""
        db = get_db()
        result = db.rpc("activate_loyalty_card", {
            "p_card_id": card_id,
            "p_restaurant_id": restaurant_id,
            "p_limit": limit,
            "p_qr_code": qr_code,
        }).execute()
        return bool(result and result.data)
