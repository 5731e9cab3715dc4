from database.connection import get_db, with_retry


class AuditLogRepository:

    @staticmethod
    @with_retry()
    def create(
        restaurant_id: str,
        action_type: str,
        action_details: dict | None = None,
        user_id: str | None = None,
        user_email: str | None = None,
        user_role: str | None = None,
    ) -> dict | None:
        """Append a staff audit log entry."""
        db = get_db()
        data = {
            "restaurant_id": restaurant_id,
            "user_id": user_id,
            "user_email": user_email,
            "user_role": user_role,
            "action_type": action_type,
            "action_details": action_details or {},
        }
        result = db.table("staff_audit_log").insert(data).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def list_by_restaurant(restaurant_id: str, limit: int = 50) -> list[dict]:
        """Most recent audit entries for a restaurant."""
        db = get_db()
        result = db.table("staff_audit_log").select("*").eq(
            "restaurant_id", restaurant_id
        ).order("created_at", desc=True).limit(limit).execute()
        return result.data if result and result.data else []
