"""
security/events.py -- Append-only security event log.

Every manager reports what it decided here. Events go two places:
  1. The credential store list "security:events" (newest first, trimmed to
     SECURITY_EVENT_RETENTION entries) for real-time monitoring.
  2. The "trustgate.events" logger, for whatever log shipping the host uses.

emit() is fire-and-forget: a failure to record an event is logged and
swallowed. An audit hiccup must never turn a deny into an error or an allow
into a crash.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any

from core.errors import MalformedStoredData, TrustGateError
from security.crypto import CryptoPrimitives
from security.models import SecurityEvent
from store.kv import CredentialStore

logger = logging.getLogger("trustgate.events")

EVENTS_KEY = "security:events"


class SecurityEventLog:
    def __init__(self, store: CredentialStore, crypto: CryptoPrimitives, retention: int = 10000) -> None:
        self._store = store
        self._crypto = crypto
        self.retention = retention

    def emit(
        self,
        event_type: str,
        severity: str,
        details: dict[str, Any],
        *,
        user_id: str | None = None,
        ip_address: str = "internal",
        user_agent: str = "system",
        resolved: bool = True,
    ) -> SecurityEvent | None:
        """Record one event. Returns it, or None if it could not be built or stored."""
        try:
            event = SecurityEvent(
                id=self._crypto.new_uuid(),
                type=event_type,
                severity=severity,
                timestamp=datetime.now(timezone.utc).isoformat(),
                user_id=user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details=details,
                resolved=resolved,
            )
            logger.info(
                "Security event type=%s severity=%s user=%s details=%s",
                event.type,
                event.severity,
                event.user_id,
                event.details,
            )
            self._store.lpush(EVENTS_KEY, event.to_json())
            self._store.ltrim(EVENTS_KEY, 0, self.retention - 1)
        except Exception:
            logger.exception("Failed to record security event %s", event_type)
            return None
        return event

    def recent(self, limit: int = 100) -> list[SecurityEvent]:
        """Return up to limit events, newest first. Unreadable entries are skipped."""
        events: list[SecurityEvent] = []
        for raw in self._store.lrange(EVENTS_KEY, 0, limit - 1):
            try:
                events.append(SecurityEvent.from_json(raw, EVENTS_KEY))
            except MalformedStoredData:
                logger.warning("Skipping malformed entry in %s", EVENTS_KEY)
        return events

    def count(self) -> int:
        try:
            return self._store.llen(EVENTS_KEY)
        except TrustGateError:
            return 0
