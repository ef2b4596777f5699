"""Subscription entitlements from verified store purchases."""

from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorClientSession
from pymongo import ReturnDocument

from app.core.audit import log_event
from app.core.logging import get_logger
from app.models.subscription import UserSubscription
from app.services.apple_receipts import VerifiedPurchase
from app.services.catalog import ProductInfo
from app.services.wallets import session_kwargs

log = get_logger(__name__)

FREE_PLAN = "free"


async def activate_subscription(
    user_id: str,
    product: ProductInfo,
    purchase: VerifiedPurchase,
    platform: str = "apple",
    session: AsyncIOMotorClientSession | None = None,
) -> UserSubscription:
    """
    Set-expiry semantics: the subscription expires at the verified expiration date.
    An existing later expiry is kept ($max), so a replayed older receipt never shortens access.
    """
    now = datetime.utcnow()
    update: dict = {
        "$set": {
            "plan": product.plan or product.product_id,
            "product_id": product.product_id,
            "platform": platform,
            "status": "active",
            "original_transaction_id": purchase.original_transaction_id,
            "latest_transaction_id": purchase.transaction_id,
            "is_trial": purchase.is_trial,
            "updated_at": now,
        },
        "$setOnInsert": {"created_at": now},
    }
    if purchase.expiration_date is not None:
        update["$max"] = {"expires_at": purchase.expiration_date}
    collection = UserSubscription.get_motor_collection()
    await collection.find_one_and_update(
        {"user_id": user_id},
        update,
        upsert=True,
        return_document=ReturnDocument.AFTER,
        **session_kwargs(session),
    )
    subscription = await UserSubscription.find_one(UserSubscription.user_id == user_id, session=session)
    await log_event(
        user_id,
        "subscription_activated",
        "subscription",
        purchase.transaction_id,
        {
            "plan": subscription.plan,
            "product_id": product.product_id,
            "expires_at": subscription.expires_at.isoformat() if subscription.expires_at else None,
            "is_trial": purchase.is_trial,
        },
        session=session,
    )
    log.info(
        "subscription_activated",
        user_id=user_id,
        product_id=product.product_id,
        plan=subscription.plan,
    )
    return subscription


async def get_subscription(user_id: str) -> dict:
    """Current plan for the user; expired or missing subscriptions report the free plan."""
    sub = await UserSubscription.find_one(UserSubscription.user_id == user_id)
    if not sub or not sub.is_active():
        return {
            "plan": FREE_PLAN,
            "subscribed": False,
            "expires_at": sub.expires_at.isoformat() if sub and sub.expires_at else None,
        }
    return {
        "plan": sub.plan,
        "subscribed": True,
        "product_id": sub.product_id,
        "platform": sub.platform,
        "expires_at": sub.expires_at.isoformat() if sub.expires_at else None,
        "is_trial": sub.is_trial,
    }
