from fastapi import APIRouter, Depends, Query

from app.core.exceptions import NotFoundError
from app.core.pagination import page, paginate
from app.deps import get_current_user
from app.models.user import User
from app.models.wallet import CURRENCIES
from app.services import subscriptions as subscriptions_service
from app.services import wallets as wallets_service

router = APIRouter()


@router.get("")
async def wallets_list(user: User = Depends(get_current_user)):
    """Return minutes and coins balances."""
    return {"wallets": await wallets_service.list_wallets(str(user.id))}


@router.get("/subscription")
async def wallets_subscription(user: User = Depends(get_current_user)):
    return await subscriptions_service.get_subscription(str(user.id))


@router.get("/{currency}/transactions")
async def wallet_transactions(
    currency: str,
    user: User = Depends(get_current_user),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Return transactions for one currency (newest first)."""
    if currency not in CURRENCIES:
        raise NotFoundError(f"Unknown currency: {currency}")
    limit, offset = paginate(limit, offset)
    entries = await wallets_service.list_transactions(str(user.id), currency, limit, offset)
    return page([wallets_service.transaction_to_dict(e) for e in entries], limit, offset)
