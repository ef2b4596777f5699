from datetime import datetime

import pymongo
from beanie import Document
from pydantic import Field
from pymongo import IndexModel

CURRENCIES = ("minutes", "coins")


class UserWallet(Document):
    """Balance per user and currency; only ever changed through $inc."""
    user_id: str
    currency: str  # minutes | coins
    balance: int = 0
    lifetime_earned: int = 0  # monotonic
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "user_wallets"
        indexes = [
            IndexModel(
                [("user_id", pymongo.ASCENDING), ("currency", pymongo.ASCENDING)],
                name="user_currency_unique",
                unique=True,
            ),
        ]
