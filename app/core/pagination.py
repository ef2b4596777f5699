"""Pagination helpers for list endpoints."""

from typing import Any


def paginate(limit: int, offset: int, max_limit: int = 200) -> tuple[int, int]:
    """Clamp limit/offset; return (limit, offset)."""
    limit = max(1, min(limit, max_limit))
    offset = max(0, offset)
    return limit, offset


def page(items: list[Any], limit: int, offset: int, total: int | None = None) -> dict[str, Any]:
    out: dict[str, Any] = {"items": items, "limit": limit, "offset": offset}
    if total is not None:
        out["total"] = total
    return out
