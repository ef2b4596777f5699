"""Audit log for entitlement changes."""

from typing import Any

from motor.motor_asyncio import AsyncIOMotorClientSession

from app.models.audit_log import AuditLog


async def log_event(
    user_id: str | None,
    event_type: str,
    entity_type: str,
    entity_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    session: AsyncIOMotorClientSession | None = None,
) -> AuditLog:
    """Append to audit_logs collection (inside `session` when one is open)."""
    entry = AuditLog(
        user_id=user_id,
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        metadata=metadata or {},
    )
    await entry.insert(session=session)
    return entry
