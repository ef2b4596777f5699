"""
In-app purchase verification and entitlement grant.

received -> verifying -> duplicate (success, nothing granted) | rejected
                      -> new -> ledger row + grant + transaction record -> success

The receipts ledger is the idempotency guard: a pre-check short-circuits known
transaction ids, and the unique (platform, transaction_id) index rejects the
loser of two concurrent submissions.
"""

from datetime import datetime, timezone
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClientSession
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.audit import log_event
from app.core.config import Settings
from app.core.exceptions import AppError, BadRequestError, PersistenceError
from app.core.logging import get_logger
from app.db.init import transaction
from app.models.iap_receipt import IapReceipt
from app.services import subscriptions as subscriptions_service
from app.services import wallets as wallets_service
from app.services.apple_receipts import AppleReceiptVerifier, VerifiedPurchase
from app.services.catalog import SUBSCRIPTION, UNKNOWN, ProductInfo, get_product, is_wallet_product

log = get_logger(__name__)

PLATFORM_APPLE = "apple"
RECEIPT_SNIPPET_CHARS = 1000


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc).isoformat()


def iap_description(product_id: str) -> str:
    return f"iOS IAP: {product_id}"


async def find_receipt(platform: str, transaction_id: str) -> IapReceipt | None:
    return await IapReceipt.find_one(
        IapReceipt.platform == platform,
        IapReceipt.transaction_id == transaction_id,
    )


def _already_processed(purchase: VerifiedPurchase, product_type: str) -> dict[str, Any]:
    return {
        "success": True,
        "alreadyProcessed": True,
        "message": "Transaction already processed",
        "productId": purchase.product_id,
        "transactionId": purchase.transaction_id,
        "productType": product_type,
        "isTrial": purchase.is_trial,
    }


def _log_hint_mismatch(
    user_id: str,
    purchase: VerifiedPurchase,
    product_id_hint: str | None,
    transaction_id_hint: str | None,
) -> None:
    if product_id_hint and product_id_hint != purchase.product_id:
        log.warning(
            "client_hint_mismatch",
            user_id=user_id,
            field="productId",
            claimed=product_id_hint,
            verified=purchase.product_id,
        )
    if transaction_id_hint and transaction_id_hint != purchase.transaction_id:
        log.warning(
            "client_hint_mismatch",
            user_id=user_id,
            field="transactionId",
            claimed=transaction_id_hint,
            verified=purchase.transaction_id,
        )


async def verify_apple_purchase(
    user_id: str,
    receipt_data: str | None,
    settings: Settings,
    verifier: AppleReceiptVerifier | None = None,
    product_id_hint: str | None = None,
    transaction_id_hint: str | None = None,
) -> dict[str, Any]:
    """Verify an App Store receipt for `user_id` and grant what it bought, exactly once."""
    if not receipt_data or not receipt_data.strip():
        raise BadRequestError("Receipt data is required")
    verifier = verifier or AppleReceiptVerifier(settings)
    log.info("iap_verify_started", user_id=user_id, product_id=product_id_hint)

    try:
        purchase = await verifier.verify(receipt_data)
    except AppError as e:
        log.warning("iap_verify_failed", user_id=user_id, product_id=product_id_hint, code=e.code, **e.details)
        raise
    _log_hint_mismatch(user_id, purchase, product_id_hint, transaction_id_hint)

    product = get_product(purchase.product_id)
    product_type = product.type if product else UNKNOWN

    existing = await find_receipt(PLATFORM_APPLE, purchase.transaction_id)
    if existing:
        log.info(
            "iap_transaction_already_processed",
            user_id=user_id,
            product_id=purchase.product_id,
            transaction_id=purchase.transaction_id,
        )
        return _already_processed(purchase, product_type)

    if product is None:
        log.warning(
            "unrecognized_product",
            user_id=user_id,
            product_id=purchase.product_id,
            transaction_id=purchase.transaction_id,
        )

    try:
        async with transaction(settings.mongodb_transactions) as session:
            granted = await _grant(user_id, receipt_data, purchase, product, product_type, session)
    except PyMongoError as e:
        # An aborted transaction wrote nothing; a ledger row now is a concurrent winner's.
        if settings.mongodb_transactions and await find_receipt(PLATFORM_APPLE, purchase.transaction_id):
            log.info(
                "iap_transaction_already_processed",
                user_id=user_id,
                product_id=purchase.product_id,
                transaction_id=purchase.transaction_id,
                concurrent=True,
            )
            return _already_processed(purchase, product_type)
        log.error(
            "iap_grant_persistence_failed",
            user_id=user_id,
            product_id=purchase.product_id,
            transaction_id=purchase.transaction_id,
            error=str(e),
        )
        raise PersistenceError() from e

    if not granted:
        log.info(
            "iap_transaction_already_processed",
            user_id=user_id,
            product_id=purchase.product_id,
            transaction_id=purchase.transaction_id,
            concurrent=True,
        )
        return _already_processed(purchase, product_type)

    log.info(
        "iap_purchase_verified",
        user_id=user_id,
        product_id=purchase.product_id,
        transaction_id=purchase.transaction_id,
        product_type=product_type,
        sandbox=purchase.is_sandbox,
    )
    out: dict[str, Any] = {
        "success": True,
        "alreadyProcessed": False,
        "productId": purchase.product_id,
        "transactionId": purchase.transaction_id,
        "productType": product_type,
        "isTrial": purchase.is_trial,
    }
    if product is not None and product.amount is not None:
        out["amount"] = product.amount
    if purchase.expiration_date is not None:
        out["expirationDate"] = _iso(purchase.expiration_date)
    return out


async def _grant(
    user_id: str,
    receipt_data: str,
    purchase: VerifiedPurchase,
    product: ProductInfo | None,
    product_type: str,
    session: AsyncIOMotorClientSession | None,
) -> bool:
    """
    Ledger row, then the wallet/subscription change, then the audit event.
    Returns False when the ledger already holds this transaction (lost a concurrent race).

    With a session all of it commits or aborts together. Without one, the ledger row is
    removed again if the grant fails, so a retry is not answered as already processed.
    """
    receipt = IapReceipt(
        user_id=user_id,
        platform=PLATFORM_APPLE,
        product_id=purchase.product_id,
        product_type=product_type,
        transaction_id=purchase.transaction_id,
        original_transaction_id=purchase.original_transaction_id,
        receipt_data=receipt_data[:RECEIPT_SNIPPET_CHARS],
        purchase_date=purchase.purchase_date,
        expiration_date=purchase.expiration_date,
        is_trial=purchase.is_trial,
        is_sandbox=purchase.is_sandbox,
        status="active",
        verification_response=purchase.raw,
    )

    try:
        await receipt.insert(session=session)
    except DuplicateKeyError:
        if session is not None:
            # The server aborts the transaction on a write error; the caller re-checks the ledger
            raise
        return False

    try:
        if is_wallet_product(product):
            await wallets_service.credit_wallet(
                user_id,
                product.type,
                product.amount,
                "iap_purchase",
                description=iap_description(purchase.product_id),
                reference_id=purchase.transaction_id,
                session=session,
            )
        elif product is not None and product.type == SUBSCRIPTION:
            await subscriptions_service.activate_subscription(
                user_id, product, purchase, platform=PLATFORM_APPLE, session=session
            )
    except PyMongoError:
        if session is None:
            # Nothing was granted; drop the ledger row so a retry starts clean
            await receipt.delete()
        raise

    await log_event(
        user_id,
        "iap_purchase_verified",
        "iap_receipt",
        purchase.transaction_id,
        {
            "platform": PLATFORM_APPLE,
            "product_id": purchase.product_id,
            "product_type": product_type,
            "amount": product.amount if product else None,
            "sandbox": purchase.is_sandbox,
        },
        session=session,
    )
    return True
