from datetime import date, datetime, timezone

from database.connection import get_db, with_retry


class EventRepository:

    @staticmethod
    @with_retry()
    def create(restaurant_id: str, title: str, event_date: str, **fields) -> dict | None:
        """Create an event. ``status`` defaults to draft."""
        db = get_db()
        data = {
            "restaurant_id": restaurant_id,
            "title": title,
            "event_date": event_date,
            "status": "draft",
            "interested_count": 0,
            "view_count": 0,
            **fields,
        }
        result = db.table("events").insert(data).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_id(event_id: str) -> dict | None:
        db = get_db()
        result = db.table("events").select("*").eq(
            "id", event_id
        ).is_("deleted_at", "null").limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_all(restaurant_id: str) -> list[dict]:
        db = get_db()
        result = db.table("events").select("*").eq(
            "restaurant_id", restaurant_id
        ).is_("deleted_at", "null").order("event_date").execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def update(event_id: str, **kwargs) -> dict | None:
        db = get_db()
        kwargs["updated_at"] = datetime.now(timezone.utc).isoformat()
        result = db.table("events").update(kwargs).eq("id", event_id).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def soft_delete(event_id: str) -> bool:
        """Mark a draft event as deleted."""
        db = get_db()
        result = db.table("events").update({
            "deleted_at": datetime.now(timezone.utc).isoformat(),
        }).eq("id", event_id).eq("status", "draft").execute()
        return bool(result and result.data and len(result.data) > 0)

    @staticmethod
    @with_retry()
    def count_active(restaurant_id: str, today: date | None = None) -> int:
        """Count active events that have not yet happened."""
        db = get_db()
        today = today or date.today()
        result = db.table("events").select(
            "id", count="exact"
        ).eq("restaurant_id", restaurant_id).eq("status", "active").gte(
            "event_date", today.isoformat()
        ).is_("deleted_at", "null").execute()
        return result.count if result and result.count is not None else 0

    @staticmethod
    @with_retry()
    def activate(event_id: str, restaurant_id: str, limit: int | None) -> bool:
        """Activate a draft event if the upcoming active count is still under ``limit``."""
        db = get_db()
        result = db.rpc("activate_event", {
            "p_event_id": event_id,
            "p_restaurant_id": restaurant_id,
            "p_limit": limit,
        }).execute()
        return bool(result and result.data)
