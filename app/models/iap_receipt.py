from datetime import datetime
from typing import Any

import pymongo
from beanie import Document
from pydantic import Field
from pymongo import IndexModel


class IapReceipt(Document):
    """Processed store receipt; one row per (platform, transaction_id), never updated."""
    user_id: str
    platform: str = "apple"
    product_id: str
    product_type: str  # subscription | minutes | coins | unknown
    transaction_id: str
    original_transaction_id: str | None = None
    receipt_data: str = ""  # truncated, reference only
    purchase_date: datetime | None = None
    expiration_date: datetime | None = None
    is_trial: bool = False
    is_sandbox: bool = False
    status: str = "active"
    verification_response: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "iap_receipts"
        indexes = [
            IndexModel(
                [("platform", pymongo.ASCENDING), ("transaction_id", pymongo.ASCENDING)],
                name="platform_transaction_unique",
                unique=True,
            ),
            [("user_id", 1), ("created_at", -1)],
        ]
