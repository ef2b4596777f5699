from datetime import datetime

from beanie import Document
from pydantic import Field


class WalletTransaction(Document):
    user_id: str
    currency: str
    amount: int  # positive = credit, negative = debit
    balance_after: int | None = None  # set once the wallet increment commits
    transaction_type: str  # iap_purchase, admin_grant
    description: str = ""
    reference_id: str | None = None  # store transaction_id for IAP grants
    created_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "wallet_transactions"
        indexes = [
            [("user_id", 1), ("currency", 1), ("created_at", -1)],
            [("reference_id", 1)],
        ]
