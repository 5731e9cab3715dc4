from database.connection import get_db, with_retry


class RestaurantRepository:

    @staticmethod
    @with_retry()
    def create(
        owner_id: str,
        name: str,
        slug: str,
        authorized_staff_emails: list[str] | None = None,
    ) -> dict | None:
        """Create a new restaurant on the free tier."""
        db = get_db()
        data = {
            "owner_id": owner_id,
            "name": name,
            "slug": slug,
            "authorized_staff_emails": authorized_staff_emails or [],
            "subscription_tier": "free",
            "subscription_status": "active",
            "billing_type": "monthly",
        }
        result = db.table("restaurants").insert(data).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_id(restaurant_id: str) -> dict | None:
        """Get a restaurant by ID."""
        db = get_db()
        result = db.table("restaurants").select("*").eq("id", restaurant_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_slug(slug: str) -> dict | None:
        """Get a restaurant by URL slug."""
        db = get_db()
        result = db.table("restaurants").select("*").eq("slug", slug).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def list_for_user(user_id: str, email: str | None = None) -> list[dict]:
        """Restaurants the user owns, plus those listing their email as staff."""
        db = get_db()
        owned = db.table("restaurants").select("*").eq("owner_id", user_id).execute()
        restaurants = list(owned.data) if owned and owned.data else []
        if email:
            staffed = db.table("restaurants").select("*").contains(
                "authorized_staff_emails", [email.lower()]
            ).execute()
            seen = {r["id"] for r in restaurants}
            for row in (staffed.data if staffed and staffed.data else []):
                if row["id"] not in seen:
                    restaurants.append(row)
        return restaurants

    @staticmethod
    @with_retry()
    def get_by_stripe_subscription_id(subscription_id: str) -> dict | None:
        """Get the restaurant billed through a Stripe subscription."""
        db = get_db()
        result = db.table("restaurants").select("*").eq(
            "stripe_subscription_id", subscription_id
        ).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def update(restaurant_id: str, **kwargs) -> dict | None:
        """Update a restaurant."""
        db = get_db()
        result = db.table("restaurants").update(kwargs).eq("id", restaurant_id).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def update_by_stripe_subscription_id(subscription_id: str, **kwargs) -> list[dict]:
        """Update every restaurant attached to a Stripe subscription."""
        db = get_db()
        result = db.table("restaurants").update(kwargs).eq(
            "stripe_subscription_id", subscription_id
        ).execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def update_by_stripe_customer_id(customer_id: str, **kwargs) -> list[dict]:
        """Update every restaurant attached to a Stripe customer."""
        db = get_db()
        result = db.table("restaurants").update(kwargs).eq(
            "stripe_customer_id", customer_id
        ).execute()
        return result.data if result and result.data else []

    @staticmethod
    @with_retry()
    def record_notification_sent(restaurant_id: str, limit: int | None) -> int | None:
        """Increment the monthly notification counter if still under ``limit``.

        Returns the new counter value, or None when the cap was already reached.
        """
        db = get_db()
        result = db.rpc("record_notification_sent", {
            "p_restaurant_id": restaurant_id,
            "p_limit": limit,
        }).execute()
        return result.data if result else None

    @staticmethod
    @with_retry()
    def release_notification_sent(restaurant_id: str) -> int | None:
        """Give back one send taken by record_notification_sent."""
        db = get_db()
        result = db.rpc("release_notification_sent", {
            "p_restaurant_id": restaurant_id,
        }).execute()
        return result.data if result else None

    @staticmethod
    @with_retry()
    def reset_notification_counter(
        restaurant_id: str,
        expected_last_reset: str | None,
        now: str,
    ) -> bool:
        """Zero the counter unless another request already reset it."""
        db = get_db()
        result = db.rpc("reset_notification_counter", {
            "p_restaurant_id": restaurant_id,
            "p_expected_last_reset": expected_last_reset,
            "p_now": now,
        }).execute()
        return bool(result and result.data)

    @staticmethod
    @with_retry()
    def get_by_stripe_customer_id(customer_id: str) -> dict | None:
        """Get the restaurant attached to a Stripe customer."""
        db = get_db()
        result = db.table("restaurants").select("*").eq(
            "stripe_customer_id", customer_id
        ).limit(1).execute()
        return result.data[0] if result and result.data else None
