"""
Secret Santa Checks Module - Organizer Access Control

Every event gets its own organizer key at creation. Only the SHA-256 hash is
stored; the key itself is handed back once, in the create response.

RESPONSIBILITIES:
- Organizer key minting, hashing and verification
- organizer_check(): decorator for aiohttp handlers on /api/event/{event_id}/...
"""

from __future__ import annotations

import functools
import hashlib
import hmac
import secrets
from typing import Optional

from aiohttp import web

ORGANIZER_HEADER = "X-Organizer-Key"

# Application key for the store, shared with web.py
STORE_KEY = web.AppKey("store")


def mint_organizer_key() -> str:
    return secrets.token_urlsafe(24)


def hash_organizer_key(key: str) -> str:
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def verify_organizer_key(event: dict, presented: Optional[str]) -> bool:
    """Constant-time comparison of the presented key against the stored hash"""
    stored = event.get("organizer_key_hash")
    if not stored or not presented:
        return False
    return hmac.compare_digest(stored, hash_organizer_key(presented))


def organizer_check():
    """
    Require the event's organizer key on a handler.

    The handler's route must have an {event_id} segment. On success the
    event is available as request["event"].

    Raises:
        web.HTTPNotFound: Unknown event, or missing or wrong key. Both look
            the same so event ids cannot be enumerated.
    """
    def decorator(handler):
        @functools.wraps(handler)
        async def wrapper(request: web.Request):
            store = request.app[STORE_KEY]
            event = await store.get_event(request.match_info["event_id"])
            if not event or not verify_organizer_key(event, request.headers.get(ORGANIZER_HEADER)):
                raise web.HTTPNotFound()

            request["event"] = event
            return await handler(request)

        return wrapper

    return decorator
