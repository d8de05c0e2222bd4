"""
Temporary storage for parsed order previews.

Holds the orders of a preview in memory so a commit can reference them by
previewId instead of posting them back. Entries expire after a TTL.
Single process only.
"""
import uuid
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional

from config.settings import settings
from models.order_import import ParsedOrder

_cache: dict[str, tuple[datetime, list[ParsedOrder]]] = {}
_lock = Lock()


def store_preview(orders: list[ParsedOrder], ttl_minutes: Optional[int] = None) -> str:
    """Store parsed orders, return preview_id."""
    preview_id = str(uuid.uuid4())
    expires_at = datetime.now() + timedelta(minutes=ttl_minutes or settings.preview_ttl_minutes)
    with _lock:
        _cache[preview_id] = (expires_at, orders)
        _cleanup_expired()
    return preview_id


def retrieve_preview(preview_id: str) -> Optional[list[ParsedOrder]]:
    """Orders stored under preview_id. Returns None if expired/not found."""
    with _lock:
        entry = _cache.get(preview_id)
        if entry is None:
            return None
        expires_at, orders = entry
        if datetime.now() > expires_at:
            del _cache[preview_id]
            return None
        return orders


def delete_preview(preview_id: str) -> None:
    """Remove preview after a successful commit."""
    with _lock:
        _cache.pop(preview_id, None)


def clear_previews() -> None:
    with _lock:
        _cache.clear()


def _cleanup_expired() -> None:
    """Remove all expired entries. Caller holds the lock."""
    now = datetime.now()
    expired = [k for k, (exp, _) in _cache.items() if now > exp]
    for k in expired:
        del _cache[k]
