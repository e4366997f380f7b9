from datetime import datetime

from app.core.access import to_utc
from database.connection import get_db, with_retry


class UserRepository:

    @staticmethod
    @with_retry()
    def get_by_id(user_id: str) -> dict | None:
        """Get a user by ID."""
        db = get_db()
        result = db.table("users").select("*").eq("id", user_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def get_by_stripe_customer_id(customer_id: str) -> dict | None:
        """Get the user owning a processor customer."""
        db = get_db()
        result = db.table("users").select("*").eq("stripe_customer_id", customer_id).limit(1).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def set_stripe_customer_id(user_id: str, customer_id: str) -> dict | None:
        db = get_db()
        result = db.table("users").update({
            "stripe_customer_id": customer_id,
        }).eq("id", user_id).execute()
        return result.data[0] if result and result.data else None

    @staticmethod
    @with_retry()
    def set_beta_access(user_id: str, code: str, expires_at: datetime) -> dict | None:
        """Grant a beta window to a user."""
        db = get_db()
        result = db.table("users").update({
            "beta_access_code": code,
            "beta_expires_at": to_utc(expires_at).isoformat(),
        }).eq("id", user_id).execute()
        return result.data[0] if result and result.data else None
