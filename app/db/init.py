from contextlib import asynccontextmanager
from typing import AsyncIterator

import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession

from app.core.config import get_settings
from app.models.audit_log import AuditLog
from app.models.iap_receipt import IapReceipt
from app.models.subscription import UserSubscription
from app.models.user import User
from app.models.wallet import UserWallet
from app.models.wallet_transaction import WalletTransaction

DOCUMENT_MODELS = [
    User,
    IapReceipt,
    UserWallet,
    WalletTransaction,
    UserSubscription,
    AuditLog,
]

_client = None


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db(client=None) -> None:
    """Connect beanie to MongoDB; `client` overrides the configured motor client (tests)."""
    global _client
    settings = get_settings()
    if client is None:
        # Atlas in Docker: tlsCAFile + tlsDisableOCSPEndpointCheck avoid TLSV1_ALERT_INTERNAL_ERROR
        kwargs = {}
        if _use_tls(settings.mongodb_uri):
            kwargs["tlsCAFile"] = certifi.where()
            kwargs["tlsDisableOCSPEndpointCheck"] = True
        client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    _client = client
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)


@asynccontextmanager
async def transaction(enabled: bool) -> AsyncIterator[AsyncIOMotorClientSession | None]:
    """
    Yield a session with an open multi-document transaction, or None.
    Leaving the block normally commits; an exception aborts everything written with the session.
    """
    if not enabled or _client is None:
        yield None
        return
    async with await _client.start_session() as session:
        async with session.start_transaction():
            yield session
