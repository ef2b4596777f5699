from app.models.user import User
from app.models.iap_receipt import IapReceipt
from app.models.wallet import UserWallet
from app.models.wallet_transaction import WalletTransaction
from app.models.subscription import UserSubscription
from app.models.audit_log import AuditLog

__all__ = [
    "User",
    "IapReceipt",
    "UserWallet",
    "WalletTransaction",
    "UserSubscription",
    "AuditLog",
]
