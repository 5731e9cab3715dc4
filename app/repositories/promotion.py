from datetime import datetime, timezone

from database.connection import get_db, with_retry


class PromotionRepository:

    @staticmethod
    @with_retry()
    def create(restaurant_id: str, title: str, **fields) -> dict | None:
        """Create a promotion. ``status`` defaults to draft."""
        db = get_db()
        data = {
            "restaurant_id": restaurant_id,
            "title": title,
            "status": "draft",
            "view_count": 0,
            "save_count": 0,
            **fields,
        }
        result = db.table("promotions").insert(data).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_id(promotion_id: str) -> dict | None:
        db = get_db()
        result = db.table("promotions").select("*").eq(
            "id", promotion_id
        ).is_("deleted_at", "null").limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_all(restaurant_id: str) -> list[dict]:
        db = get_db()
        result = db.table("promotions").select("*").eq(
            "restaurant_id", restaurant_id
        ).is_("deleted_at", "null").order("created_at", desc=True).execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def update(promotion_id: str, **kwargs) -> dict | None:
        db = get_db()
        kwargs["updated_at"] = datetime.now(timezone.utc).isoformat()
        result = db.table("promotions").update(kwargs).eq("id", promotion_id).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def soft_delete(promotion_id: str) -> bool:
        """Mark a draft promotion as deleted."""
        db = get_db()
        result = db.table("promotions").update({
            "deleted_at": datetime.now(timezone.utc).isoformat(),
        }).eq("id", promotion_id).eq("status", "draft").execute()
        return bool(result and result.data and len(result.data) > 0)

    @staticmethod
    @with_retry()
    def count_active(restaurant_id: str) -> int:
        """Count active promotions for a restaurant."""
        db = get_db()
        result = db.table("promotions").select(
            "id", count="exact"
        ).eq("restaurant_id", restaurant_id).eq("status", "active").is_("deleted_at", "null").execute()
        return result.count if result and result.count is not None else 0

    @staticmethod
    @with_retry()
    def activate(promotion_id: str, restaurant_id: str, limit: int | None) -> bool:
        """Activate a draft promotion if the active count is still under ``limit``."""
        db = get_db()
        result = db.rpc("activate_promotion", {
            "p_promotion_id": promotion_id,
            "p_restaurant_id": restaurant_id,
            "p_limit": limit,
        }).execute()
        return bool(result and result.data)
