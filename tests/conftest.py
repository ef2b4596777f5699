import os
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from mongomock_motor import AsyncMongoMockClient

os.environ.setdefault("MONGODB_DB_NAME", "luna_test")
os.environ.setdefault("SECRET_KEY", "test-secret-key-min-32-characters-long")
os.environ.setdefault("APPLE_SHARED_SECRET", "test-shared-secret")
os.environ.setdefault("MONGODB_TRANSACTIONS", "false")

PRODUCTION_URL = "https://buy.itunes.apple.com/verifyReceipt"
SANDBOX_URL = "https://sandbox.itunes.apple.com/verifyReceipt"


def apple_payload(
    product_id: str = "com.luna.coins.500",
    transaction_id: str = "1000000000000001",
    status: int = 0,
    expires_ms: str | None = None,
    trial: bool = False,
    environment: str = "Production",
) -> dict:
    """Minimal verifyReceipt response body."""
    tx = {
        "product_id": product_id,
        "transaction_id": transaction_id,
        "original_transaction_id": transaction_id,
        "purchase_date_ms": "1767225600000",
        "is_trial_period": "true" if trial else "false",
        "quantity": "1",
    }
    if expires_ms:
        tx["expires_date_ms"] = expires_ms
    return {
        "status": status,
        "environment": environment,
        "receipt": {"bundle_id": "com.luna.app", "in_app": [tx]},
        "latest_receipt_info": [tx],
    }


class FakeAppStore:
    """
    httpx handler answering verifyReceipt calls from per-URL queues of payloads.
    Each queued payload is served once, in order; once a queue runs dry the last
    payload served keeps being repeated.
    """

    def __init__(self):
        self.responses: dict[str, list] = {PRODUCTION_URL: [], SANDBOX_URL: []}
        self.last: dict[str, tuple] = {}
        self.requests: list[httpx.Request] = []

    def queue(self, url: str, payload: dict | None = None, status_code: int = 200) -> None:
        self.responses[url].append((status_code, payload))

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)
        queue = self.responses[url]
        if queue:
            self.last[url] = queue.pop(0)
        status_code, payload = self.last[url]
        if payload is None:
            return httpx.Response(status_code, text="unavailable")
        return httpx.Response(status_code, json=payload)

    @property
    def urls(self) -> list[str]:
        return [str(r.url) for r in self.requests]


@pytest.fixture
def settings():
    from app.core.config import Settings
    return Settings(
        apple_shared_secret="test-shared-secret",
        apple_production_url=PRODUCTION_URL,
        apple_sandbox_url=SANDBOX_URL,
        mongodb_transactions=False,
    )


@pytest.fixture
def app_store() -> FakeAppStore:
    return FakeAppStore()


@pytest_asyncio.fixture
async def verifier(settings, app_store):
    from app.services.apple_receipts import AppleReceiptVerifier
    async with httpx.AsyncClient(transport=httpx.MockTransport(app_store)) as http:
        yield AppleReceiptVerifier(settings, client=http)


@pytest_asyncio.fixture
async def db():
    """Fresh in-memory database per test."""
    from app.db.init import init_db
    client = AsyncMongoMockClient()
    await init_db(client=client)
    yield client


@pytest_asyncio.fixture
async def make_user(db):
    from app.models.user import User

    async def _make(email: str = "user@example.com", role: str = "user") -> User:
        user = User(email=email, name=email.split("@")[0], role=role)
        await user.insert()
        return user

    return _make


def auth_headers(user) -> dict:
    from app.core.security import create_access_token
    token = create_access_token({"user_id": str(user.id), "session_version": user.session_version})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def client(db, verifier) -> AsyncGenerator[AsyncClient, None]:
    from app.deps import get_receipt_verifier
    from app.main import app
    app.dependency_overrides[get_receipt_verifier] = lambda: verifier
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
