"""Purchase verification and entitlement grant, end to end below the HTTP layer."""

from datetime import datetime

import pytest
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.exceptions import BadRequestError, PersistenceError, UpstreamError, VerificationRejectedError
from app.models.audit_log import AuditLog
from app.models.iap_receipt import IapReceipt
from app.models.subscription import UserSubscription
from app.models.wallet import UserWallet
from app.models.wallet_transaction import WalletTransaction
from app.services import purchases as purchases_service
from app.services import subscriptions as subscriptions_service
from app.services import wallets as wallets_service
from app.services.catalog import PRODUCT_CATALOG, is_wallet_product
from conftest import PRODUCTION_URL, SANDBOX_URL, apple_payload

pytestmark = pytest.mark.asyncio

WALLET_PRODUCTS = [p for p in PRODUCT_CATALOG.values() if is_wallet_product(p)]


async def _verify(settings, verifier, user_id="u1", receipt="receipt-blob", **hints):
    return await purchases_service.verify_apple_purchase(user_id, receipt, settings, verifier=verifier, **hints)


async def test_new_user_coins_purchase(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.coins.500", "tx-1"))
    out = await _verify(settings, verifier)
    assert out == {
        "success": True,
        "alreadyProcessed": False,
        "productId": "com.luna.coins.500",
        "transactionId": "tx-1",
        "productType": "coins",
        "isTrial": False,
        "amount": 500,
    }
    wallet = await wallets_service.get_wallet("u1", "coins")
    assert wallet.balance == 500
    assert wallet.lifetime_earned == 500
    rows = await WalletTransaction.find_all().to_list()
    assert len(rows) == 1
    assert rows[0].amount == 500
    assert rows[0].description == "iOS IAP: com.luna.coins.500"
    assert rows[0].reference_id == "tx-1"


async def test_existing_wallet_is_incremented(db, settings, verifier, app_store):
    await UserWallet(user_id="u1", currency="coins", balance=100, lifetime_earned=100).insert()
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.coins.500", "tx-2"))
    await _verify(settings, verifier)
    assert await wallets_service.get_balance("u1", "coins") == 600


@pytest.mark.parametrize("product", WALLET_PRODUCTS, ids=lambda p: p.product_id)
async def test_grant_matches_catalog_amount(db, settings, verifier, app_store, product):
    app_store.queue(PRODUCTION_URL, apple_payload(product.product_id, f"tx-{product.product_id}"))
    out = await _verify(settings, verifier)
    assert out["amount"] == product.amount
    assert await wallets_service.get_balance("u1", product.type) == product.amount


async def test_duplicate_transaction_grants_once(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.minutes.60", "tx-dup"))
    first = await _verify(settings, verifier)
    second = await _verify(settings, verifier)
    assert first["alreadyProcessed"] is False
    assert second["success"] is True
    assert second["alreadyProcessed"] is True
    assert second["message"] == "Transaction already processed"
    assert await wallets_service.get_balance("u1", "minutes") == 60
    assert await WalletTransaction.find_all().count() == 1
    assert await IapReceipt.find_all().count() == 1


async def test_concurrent_duplicate_hits_unique_index(db, settings, verifier, app_store, monkeypatch):
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.coins.100", "tx-race"))
    await _verify(settings, verifier)

    async def _missed_precheck(platform, transaction_id):
        return None

    # Second request passed the pre-check before the first committed
    monkeypatch.setattr(purchases_service, "find_receipt", _missed_precheck)
    out = await _verify(settings, verifier)
    assert out["alreadyProcessed"] is True
    assert await wallets_service.get_balance("u1", "coins") == 100
    assert await WalletTransaction.find_all().count() == 1


async def test_rejected_receipt_mutates_nothing(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, {"status": 21003})
    with pytest.raises(VerificationRejectedError):
        await _verify(settings, verifier)
    assert await IapReceipt.find_all().count() == 0
    assert await UserWallet.find_all().count() == 0
    assert await WalletTransaction.find_all().count() == 0


async def test_unreachable_store_mutates_nothing(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, None, status_code=500)
    with pytest.raises(UpstreamError):
        await _verify(settings, verifier)
    assert await IapReceipt.find_all().count() == 0


async def test_missing_receipt_data(db, settings, verifier, app_store):
    with pytest.raises(BadRequestError):
        await _verify(settings, verifier, receipt="  ")
    assert app_store.requests == []


async def test_sandbox_receipt_flagged(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, {"status": 21007})
    app_store.queue(SANDBOX_URL, apple_payload("com.luna.coins.1000", "tx-sb"))
    out = await _verify(settings, verifier)
    assert out["success"] is True
    receipt = await purchases_service.find_receipt("apple", "tx-sb")
    assert receipt.is_sandbox is True
    assert await wallets_service.get_balance("u1", "coins") == 1000


async def test_unknown_product_recorded_without_grant(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.mystery", "tx-unknown"))
    out = await _verify(settings, verifier)
    assert out["success"] is True
    assert out["productType"] == "unknown"
    assert "amount" not in out
    receipt = await purchases_service.find_receipt("apple", "tx-unknown")
    assert receipt.product_type == "unknown"
    assert await UserWallet.find_all().count() == 0
    assert await WalletTransaction.find_all().count() == 0


async def test_verified_values_win_over_client_hints(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.coins.100", "tx-real"))
    out = await _verify(settings, verifier, product_id_hint="com.luna.coins.2500", transaction_id_hint="tx-fake")
    assert out["productId"] == "com.luna.coins.100"
    assert out["transactionId"] == "tx-real"
    assert await wallets_service.get_balance("u1", "coins") == 100


async def test_subscription_sets_expiry(db, settings, verifier, app_store):
    app_store.queue(
        PRODUCTION_URL,
        apple_payload("com.luna.couples.monthly", "tx-sub-1", expires_ms="1769904000000", trial=True),
    )
    out = await _verify(settings, verifier)
    assert out["productType"] == "subscription"
    assert out["isTrial"] is True
    assert out["expirationDate"] == "2026-02-01T00:00:00+00:00"
    assert "amount" not in out
    sub = await UserSubscription.find_one(UserSubscription.user_id == "u1")
    assert sub.plan == "couples"
    assert sub.expires_at == datetime(2026, 2, 1)
    assert await UserWallet.find_all().count() == 0
    assert await AuditLog.find(AuditLog.event_type == "subscription_activated").count() == 1


async def test_subscription_expiry_never_moves_backwards(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.pro.yearly", "tx-y", expires_ms="1798761600000"))
    await _verify(settings, verifier)
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.pro.monthly", "tx-m", expires_ms="1769904000000"))
    await _verify(settings, verifier)
    sub = await UserSubscription.find_one(UserSubscription.user_id == "u1")
    assert sub.expires_at == datetime(2027, 1, 1)
    assert sub.latest_transaction_id == "tx-m"


async def test_wallet_failure_leaves_nothing_behind_and_retry_grants(db, settings, verifier, app_store, monkeypatch):
    real_increment = wallets_service.increment_wallet

    async def _broken_increment(*args, **kwargs):
        raise PyMongoError("write failed")

    monkeypatch.setattr(wallets_service, "increment_wallet", _broken_increment)
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.coins.500", "tx-fail"))
    with pytest.raises(PersistenceError):
        await _verify(settings, verifier)
    assert await IapReceipt.find_all().count() == 0
    assert await WalletTransaction.find_all().count() == 0
    assert await UserWallet.find_all().count() == 0

    monkeypatch.setattr(wallets_service, "increment_wallet", real_increment)
    out = await _verify(settings, verifier)
    assert out["alreadyProcessed"] is False
    assert await wallets_service.get_balance("u1", "coins") == 500
    rows = await WalletTransaction.find_all().to_list()
    assert [(r.amount, r.balance_after) for r in rows] == [(500, 500)]


async def test_failed_transaction_record_leaves_balance_untouched(db, settings, verifier, app_store, monkeypatch):
    async def _broken_record(*args, **kwargs):
        raise PyMongoError("write failed")

    monkeypatch.setattr(wallets_service, "record_transaction", _broken_record)
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.coins.100", "tx-norecord"))
    with pytest.raises(PersistenceError):
        await _verify(settings, verifier)
    # The record is written first, so its failure means the balance never moved
    assert await UserWallet.find_all().count() == 0
    assert await IapReceipt.find_all().count() == 0


async def test_balance_after_filled_once_wallet_commits(db, settings, verifier, app_store):
    await UserWallet(user_id="u1", currency="minutes", balance=15, lifetime_earned=15).insert()
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.minutes.30", "tx-bal"))
    await _verify(settings, verifier)
    entry = await WalletTransaction.find_one(WalletTransaction.reference_id == "tx-bal")
    assert entry.balance_after == 45


async def test_unrelated_duplicate_key_is_a_persistence_error(db, settings, verifier, app_store, monkeypatch):
    async def _conflicting_upsert(*args, **kwargs):
        raise DuplicateKeyError("E11000 duplicate key error collection: user_subscriptions")

    monkeypatch.setattr(subscriptions_service, "activate_subscription", _conflicting_upsert)
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.pro.monthly", "tx-sub-dup", expires_ms="1769904000000"))
    with pytest.raises(PersistenceError):
        await _verify(settings, verifier)
    assert await IapReceipt.find_all().count() == 0
    assert await UserSubscription.find_all().count() == 0


async def test_audit_event_recorded(db, settings, verifier, app_store):
    app_store.queue(PRODUCTION_URL, apple_payload("com.luna.minutes.15", "tx-audit"))
    await _verify(settings, verifier)
    event = await AuditLog.find_one(AuditLog.event_type == "iap_purchase_verified")
    assert event.entity_id == "tx-audit"
    assert event.metadata["amount"] == 15
