from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.core.exceptions import BadRequestError
from app.core.pagination import page, paginate
from app.deps import require_admin
from app.models.user import User
from app.models.wallet import CURRENCIES
from app.services import admin_reports as admin_service
from app.services import wallets as wallets_service

router = APIRouter()


class AdminGrantRequest(BaseModel):
    currency: str
    amount: int = Field(gt=0)
    description: str | None = None


@router.get("/receipts")
async def admin_receipts(
    user: User = Depends(require_admin),
    user_id: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: processed store receipts, newest first."""
    limit, offset = paginate(limit, offset)
    receipts = await admin_service.list_receipts(limit, offset, user_id=user_id)
    return page([admin_service.receipt_to_dict(r) for r in receipts], limit, offset)


@router.get("/transactions")
async def admin_transactions(
    user: User = Depends(require_admin),
    currency: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """Admin: wallet transactions across users, newest first."""
    if currency is not None and currency not in CURRENCIES:
        raise BadRequestError(f"Invalid currency: {currency}")
    limit, offset = paginate(limit, offset)
    entries = await wallets_service.list_transactions(None, currency, limit, offset)
    items = []
    for e in entries:
        item = wallets_service.transaction_to_dict(e)
        item["user_id"] = e.user_id
        items.append(item)
    return page(items, limit, offset)


@router.get("/summary")
async def admin_summary(user: User = Depends(require_admin)):
    return await admin_service.summary()


@router.post("/wallets/{user_id}/grant")
async def admin_wallet_grant(
    user_id: str,
    body: AdminGrantRequest,
    admin: User = Depends(require_admin),
):
    """Admin: credit minutes or coins to a user."""
    return await admin_service.admin_grant(
        str(admin.id), user_id, body.currency, body.amount, description=body.description
    )
