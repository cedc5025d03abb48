"""In-memory store of live checkout sessions."""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.services.checkout.orchestrator import CheckoutOrchestrator
from core.config import config as settings
from core.exceptions.base import NotFoundException
from core.logging import get_logger

logger = get_logger(__name__)


def _owner_key(access_token: str) -> str:
    return hashlib.sha256(access_token.encode("utf-8")).hexdigest()


@dataclass
class CheckoutEntry:
    orchestrator: CheckoutOrchestrator
    owner: str
    last_seen: datetime


class CheckoutRegistry:
    """Keeps orchestrators between requests, keyed by checkout id.

    Sessions belong to the access token that created them and expire after
    ``CHECKOUT_SESSION_TTL_MINUTES`` without activity.
    """

    def __init__(self, ttl_minutes: Optional[int] = None):
        self.ttl = timedelta(minutes=ttl_minutes or settings.CHECKOUT_SESSION_TTL_MINUTES)
        self._entries: dict[str, CheckoutEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, orchestrator: CheckoutOrchestrator, access_token: str) -> None:
        self.purge_expired()
        self._entries[orchestrator.checkout_id] = CheckoutEntry(
            orchestrator=orchestrator,
            owner=_owner_key(access_token),
            last_seen=datetime.now(timezone.utc),
        )
        logger.info(f"Checkout session {orchestrator.checkout_id} opened ({len(self._entries)} live)")

    def get(self, checkout_id: str, access_token: str) -> CheckoutOrchestrator:
        """Return the caller's session and refresh its credentials."""
        entry = self._entries.get(checkout_id)
        now = datetime.now(timezone.utc)
        if entry is None or entry.owner != _owner_key(access_token):
            raise NotFoundException(message="Checkout session not found")
        if now - entry.last_seen > self.ttl:
            self._entries.pop(checkout_id, None)
            logger.info(f"Checkout session {checkout_id} expired")
            raise NotFoundException(message="Checkout session expired")

        entry.last_seen = now
        entry.orchestrator.api.access_token = access_token
        return entry.orchestrator

    def remove(self, checkout_id: str) -> None:
        self._entries.pop(checkout_id, None)

    def purge_expired(self) -> int:
        now = datetime.now(timezone.utc)
        expired = [cid for cid, entry in self._entries.items() if now - entry.last_seen > self.ttl]
        for checkout_id in expired:
            del self._entries[checkout_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired checkout session(s)")
        return len(expired)
