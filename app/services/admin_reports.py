"""Admin reporting over the receipts ledger and wallet transactions, plus manual grants."""

from beanie import PydanticObjectId

from app.core.audit import log_event
from app.core.exceptions import BadRequestError, NotFoundError
from app.core.logging import get_logger
from app.models.iap_receipt import IapReceipt
from app.models.user import User
from app.models.wallet import CURRENCIES
from app.models.wallet_transaction import WalletTransaction
from app.services import wallets as wallets_service

log = get_logger(__name__)


def receipt_to_dict(r: IapReceipt) -> dict:
    """Receipt summary for reporting; receipt data and the raw store payload are left out."""
    return {
        "id": str(r.id),
        "user_id": r.user_id,
        "platform": r.platform,
        "product_id": r.product_id,
        "product_type": r.product_type,
        "transaction_id": r.transaction_id,
        "original_transaction_id": r.original_transaction_id,
        "purchase_date": r.purchase_date.isoformat() if r.purchase_date else None,
        "expiration_date": r.expiration_date.isoformat() if r.expiration_date else None,
        "is_trial": r.is_trial,
        "is_sandbox": r.is_sandbox,
        "status": r.status,
        "created_at": r.created_at.isoformat(),
    }


async def list_receipts(limit: int, offset: int, user_id: str | None = None) -> list[IapReceipt]:
    filters = [IapReceipt.user_id == user_id] if user_id else []
    return (
        await IapReceipt.find(*filters)
        .sort(-IapReceipt.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


async def summary() -> dict:
    """Receipt counts per product type and IAP-granted totals per currency."""
    receipt_rows = await IapReceipt.aggregate(
        [{"$group": {"_id": "$product_type", "count": {"$sum": 1}}}]
    ).to_list()
    granted_rows = await WalletTransaction.aggregate(
        [
            {"$match": {"transaction_type": "iap_purchase"}},
            {"$group": {"_id": "$currency", "total": {"$sum": "$amount"}, "count": {"$sum": 1}}},
        ]
    ).to_list()
    granted = {c: {"total": 0, "count": 0} for c in CURRENCIES}
    for row in granted_rows:
        granted[row["_id"]] = {"total": row["total"], "count": row["count"]}
    return {
        "receipts_by_type": {row["_id"]: row["count"] for row in receipt_rows},
        "iap_granted": granted,
    }


async def admin_grant(
    admin_id: str,
    user_id: str,
    currency: str,
    amount: int,
    description: str | None = None,
) -> dict:
    """Manual wallet credit by an admin; recorded like any other grant."""
    if not PydanticObjectId.is_valid(user_id):
        raise BadRequestError("Invalid user id")
    user = await User.get(PydanticObjectId(user_id))
    if not user:
        raise NotFoundError("User not found")
    entry, balance_after = await wallets_service.credit_wallet(
        user_id,
        currency,
        amount,
        "admin_grant",
        description=description or f"Admin grant: {amount} {currency}",
    )
    await log_event(
        admin_id,
        "admin_wallet_grant",
        "wallet",
        user_id,
        {"currency": currency, "amount": amount, "transaction_id": str(entry.id)},
    )
    log.info("admin_wallet_grant", admin_id=admin_id, user_id=user_id, currency=currency, amount=amount)
    return {
        "transaction": wallets_service.transaction_to_dict(entry),
        "balance": balance_after,
    }
