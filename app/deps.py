"""Shared FastAPI dependencies."""

from beanie import PydanticObjectId
from fastapi import Depends, Request

from app.core.config import Settings, get_settings
from app.core.exceptions import ForbiddenError, UnauthorizedError
from app.core.logging import bind_user
from app.core.security import extract_bearer_token, load_access_token
from app.models.user import User
from app.services.apple_receipts import AppleReceiptVerifier


async def get_current_user(request: Request) -> User:
    """Dependency: resolve `Authorization: Bearer <token>` to a User."""
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token:
        raise UnauthorizedError("No authorization header")
    payload = load_access_token(token)
    if not payload:
        raise UnauthorizedError("Invalid or expired token")
    user_id = payload.get("user_id")
    if not user_id or not PydanticObjectId.is_valid(user_id):
        raise UnauthorizedError("Invalid token")
    user = await User.get(PydanticObjectId(user_id))
    if not user:
        raise UnauthorizedError("User not found")
    if payload.get("session_version") != user.session_version:
        raise UnauthorizedError("Session invalidated")
    bind_user(str(user.id))
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    """Dependency: require current user to have role admin."""
    if getattr(user, "role", "user") != "admin":
        raise ForbiddenError("Admin only")
    return user


def get_receipt_verifier(settings: Settings = Depends(get_settings)) -> AppleReceiptVerifier:
    """One verifier per request, built from the request's settings."""
    return AppleReceiptVerifier(settings)
