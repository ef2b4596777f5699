"""Wallet balances (minutes, coins) and the append-only transaction record."""

from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorClientSession
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.exceptions import BadRequestError
from app.core.logging import get_logger
from app.models.wallet import CURRENCIES, UserWallet
from app.models.wallet_transaction import WalletTransaction

log = get_logger(__name__)

TRANSACTION_TYPES = ("iap_purchase", "admin_grant")


def session_kwargs(session: AsyncIOMotorClientSession | None) -> dict:
    return {"session": session} if session is not None else {}


async def get_wallet(user_id: str, currency: str) -> UserWallet | None:
    return await UserWallet.find_one(UserWallet.user_id == user_id, UserWallet.currency == currency)


async def get_balance(user_id: str, currency: str) -> int:
    """Return current balance for user (0 if no wallet row)."""
    wallet = await get_wallet(user_id, currency)
    return wallet.balance if wallet else 0


async def list_wallets(user_id: str) -> list[dict]:
    """One entry per known currency; currencies without a row report zeros."""
    rows = await UserWallet.find(UserWallet.user_id == user_id).to_list()
    by_currency = {w.currency: w for w in rows}
    out = []
    for currency in CURRENCIES:
        w = by_currency.get(currency)
        out.append(
            {
                "currency": currency,
                "balance": w.balance if w else 0,
                "lifetime_earned": w.lifetime_earned if w else 0,
                "updated_at": w.updated_at.isoformat() if w else None,
            }
        )
    return out


async def _increment(user_id: str, currency: str, amount: int, session: AsyncIOMotorClientSession | None = None) -> dict:
    """Single atomic $inc; creates the row with `amount` as balance and lifetime when absent."""
    now = datetime.utcnow()
    collection = UserWallet.get_motor_collection()
    return await collection.find_one_and_update(
        {"user_id": user_id, "currency": currency},
        {
            "$inc": {"balance": amount, "lifetime_earned": amount},
            "$set": {"updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
        return_document=ReturnDocument.AFTER,
        **session_kwargs(session),
    )


async def increment_wallet(user_id: str, currency: str, amount: int, session: AsyncIOMotorClientSession | None = None) -> int:
    """Add `amount` to the wallet and return the balance after. Never decrements."""
    if currency not in CURRENCIES:
        raise BadRequestError(f"Invalid currency: {currency}")
    if amount <= 0:
        raise BadRequestError("Amount must be positive")
    try:
        doc = await _increment(user_id, currency, amount, session)
    except DuplicateKeyError:
        # Lost the upsert race against a concurrent first grant; the row exists now.
        doc = await _increment(user_id, currency, amount, session)
    return int(doc["balance"])


async def record_transaction(
    user_id: str,
    currency: str,
    amount: int,
    balance_after: int | None,
    transaction_type: str,
    description: str = "",
    reference_id: str | None = None,
    session: AsyncIOMotorClientSession | None = None,
) -> WalletTransaction:
    if transaction_type not in TRANSACTION_TYPES:
        raise BadRequestError(f"Invalid transaction type: {transaction_type}")
    entry = WalletTransaction(
        user_id=user_id,
        currency=currency,
        amount=amount,
        balance_after=balance_after,
        transaction_type=transaction_type,
        description=description,
        reference_id=reference_id,
    )
    await entry.insert(session=session)
    return entry


async def credit_wallet(
    user_id: str,
    currency: str,
    amount: int,
    transaction_type: str,
    description: str = "",
    reference_id: str | None = None,
    session: AsyncIOMotorClientSession | None = None,
) -> tuple[WalletTransaction, int]:
    """
    Append one transaction row, then increment the wallet.
    Returns (transaction, balance_after). Pass `session` to make both part of one transaction;
    without one, the row is removed again if the increment fails.
    """
    if transaction_type not in TRANSACTION_TYPES:
        raise BadRequestError(f"Invalid transaction type: {transaction_type}")
    if currency not in CURRENCIES:
        raise BadRequestError(f"Invalid currency: {currency}")
    if amount <= 0:
        raise BadRequestError("Amount must be positive")
    entry = await record_transaction(
        user_id,
        currency,
        amount,
        None,
        transaction_type,
        description=description,
        reference_id=reference_id,
        session=session,
    )
    try:
        balance_after = await increment_wallet(user_id, currency, amount, session=session)
    except PyMongoError:
        if session is None:
            await entry.delete()
        raise
    entry.balance_after = balance_after
    await entry.save(session=session)
    log.info("wallet_credited", user_id=user_id, currency=currency, amount=amount, balance_after=balance_after)
    return entry, balance_after


async def list_transactions(
    user_id: str | None,
    currency: str | None,
    limit: int,
    offset: int,
) -> list[WalletTransaction]:
    """Newest first; `user_id=None` lists across users (admin reporting)."""
    filters = []
    if user_id is not None:
        filters.append(WalletTransaction.user_id == user_id)
    if currency is not None:
        filters.append(WalletTransaction.currency == currency)
    return (
        await WalletTransaction.find(*filters)
        .sort(-WalletTransaction.created_at)
        .skip(offset)
        .limit(limit)
        .to_list()
    )


def transaction_to_dict(e: WalletTransaction) -> dict:
    return {
        "id": str(e.id),
        "currency": e.currency,
        "amount": e.amount,
        "balance_after": e.balance_after,
        "transaction_type": e.transaction_type,
        "description": e.description,
        "reference_id": e.reference_id,
        "created_at": e.created_at.isoformat(),
    }
