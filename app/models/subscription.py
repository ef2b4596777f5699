from datetime import datetime

from beanie import Document, Indexed
from pydantic import Field


class UserSubscription(Document):
    """Current store subscription per user; expiry set from the verified receipt."""
    user_id: Indexed(str, unique=True)
    plan: str  # pro | couples
    product_id: str
    platform: str = "apple"
    status: str = "active"
    original_transaction_id: str | None = None
    latest_transaction_id: str | None = None
    expires_at: datetime | None = None
    is_trial: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "user_subscriptions"

    def is_active(self, now: datetime | None = None) -> bool:
        if self.status != "active":
            return False
        if self.expires_at is None:
            return True
        return self.expires_at > (now or datetime.utcnow())
