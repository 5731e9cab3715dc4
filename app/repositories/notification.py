from database.connection import get_db, with_retry


class NotificationRepository:

    @staticmethod
    @with_retry()
    def create(
        restaurant_id: str,
        title: str,
        message: str,
        notification_type: str = "general",
        scheduled_for: str | None = None,
        sent_at: str | None = None,
        recipients_count: int = 0,
    ) -> dict | None:
        """Create a push notification row (sent now, or scheduled)."""
        db = get_db()
        data = {
            "restaurant_id": restaurant_id,
            "title": title,
            "message": message,
            "notification_type": notification_type,
            "scheduled_for": scheduled_for,
            "sent_at": sent_at,
            "recipients_count": recipients_count,
        }
        result = db.table("push_notifications").insert(data).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_id(notification_id: str) -> dict | None:
        db = get_db()
        result = db.table("push_notifications").select("*").eq(
            "id", notification_id
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_all(restaurant_id: str) -> list[dict]:
        db = get_db()
        result = db.table("push_notifications").select("*").eq(
            "restaurant_id", restaurant_id
        ).order("created_at", desc=True).execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def delete_scheduled(notification_id: str) -> bool:
        """Delete a notification that has not been sent yet."""
        db = get_db()
        result = db.table("push_notifications").delete().eq(
            "id", notification_id
        ).is_("sent_at", "null").execute()
        return bool(result and result.data and len(result.data) > 0)

    @staticmethod
    @with_retry()
    def mark_sent(notification_id: str, sent_at: str) -> dict | None:
        """Mark a scheduled notification as sent. None if it was already sent."""
        db = get_db()
        result = db.table("push_notifications").update({
            "sent_at": sent_at,
            "scheduled_for": None,
        }).eq("id", notification_id).is_("sent_at", "null").execute()
        return result.data[0] if result and result.data else None
