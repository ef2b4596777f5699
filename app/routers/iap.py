from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import Settings, get_settings
from app.deps import get_current_user, get_receipt_verifier
from app.models.user import User
from app.services import purchases as purchases_service
from app.services.apple_receipts import AppleReceiptVerifier
from app.services.catalog import list_products

router = APIRouter()


class AppleVerifyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    receipt_data: str | None = Field(default=None, alias="receiptData")
    # Hints only; the verified receipt decides
    product_id: str | None = Field(default=None, alias="productId")
    transaction_id: str | None = Field(default=None, alias="transactionId")


@router.post("/apple/verify")
async def verify_apple_purchase(
    body: AppleVerifyRequest,
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_settings),
    verifier: AppleReceiptVerifier = Depends(get_receipt_verifier),
):
    """Verify an App Store receipt and grant minutes, coins or a subscription (idempotent per transaction)."""
    return await purchases_service.verify_apple_purchase(
        str(user.id),
        body.receipt_data,
        settings,
        verifier=verifier,
        product_id_hint=body.product_id,
        transaction_id_hint=body.transaction_id,
    )


@router.get("/products")
async def iap_products():
    """Store products and what each one grants."""
    return {"products": list_products()}
