"""Fan-out of broker events to live client connections."""

import asyncio
import json
from typing import Any, Optional, Protocol

import structlog

logger = structlog.get_logger()

# Keys that must never reach a client connection
REDACTED_KEYS = frozenset(
    {"token", "secret", "signedUrl", "signed_url", "authorization", "credentials"}
)


class Connection(Protocol):
    """Anything that can push a text frame to a client (e.g. a WebSocket)."""

    async def send_text(self, data: str) -> None: ...


def redact(payload: Any) -> Any:
    """Return a copy of ``payload`` without keys listed in REDACTED_KEYS."""
    if isinstance(payload, dict):
        return {
            key: redact(value)
            for key, value in payload.items()
            if key not in REDACTED_KEYS
        }
    if isinstance(payload, list):
        return [redact(item) for item in payload]
    return payload


class NotificationBridge:
    """Maps user ids to live connections and pushes events to them.

    Delivery is best-effort and at-most-once: events for a user with no
    registered connection are dropped. Each event is serialized once and
    written as a single frame per connection; a per-connection lock keeps
    concurrent publishes from interleaving on the same socket.
    """

    def __init__(self) -> None:
        self._connections: dict[str, set[Connection]] = {}
        self._owners: dict[Connection, str] = {}
        self._send_locks: dict[Connection, asyncio.Lock] = {}

        logger.info("notification_bridge_initialized", source="bridge")

    def register(self, user_id: str, connection: Connection) -> None:
        """Attach ``connection`` to ``user_id``. A user may hold many."""
        previous = self._owners.get(connection)
        if previous is not None and previous != user_id:
            self.unregister(connection)

        self._connections.setdefault(user_id, set()).add(connection)
        self._owners[connection] = user_id
        self._send_locks.setdefault(connection, asyncio.Lock())

        logger.info(
            "client_registered",
            user_id=user_id,
            user_connections=len(self._connections[user_id]),
            source="bridge",
        )

    def unregister(self, connection: Connection) -> None:
        """Detach ``connection``. Unknown connections are ignored."""
        user_id = self._owners.pop(connection, None)
        self._send_locks.pop(connection, None)
        if user_id is None:
            return

        connections = self._connections.get(user_id)
        if connections is not None:
            connections.discard(connection)
            if not connections:
                del self._connections[user_id]

        logger.info("client_unregistered", user_id=user_id, source="bridge")

    def connection_count(self, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self._owners)
        return len(self._connections.get(user_id, ()))

    async def publish(
        self, user_id: str, event_type: str, payload: Optional[dict] = None
    ) -> int:
        """Deliver an event to every connection registered for ``user_id``.

        Args:
            user_id: Routing key; only this user's connections see the event
            event_type: Event name (e.g., 'thumbnail-updated')
            payload: Event body, merged into the message after redaction

        Returns:
            Number of connections the event was written to
        """
        targets = list(self._connections.get(user_id, ()))
        if not targets:
            logger.debug(
                "event_dropped_no_connections",
                user_id=user_id,
                event_type=event_type,
                source="bridge",
            )
            return 0

        message = json.dumps(
            {**redact(payload or {}), "eventType": event_type}, default=str
        )
        results = await asyncio.gather(
            *(self._send(connection, message) for connection in targets)
        )
        delivered = sum(1 for ok in results if ok)

        logger.info(
            "event_published",
            user_id=user_id,
            event_type=event_type,
            delivered=delivered,
            stale=len(targets) - delivered,
            source="bridge",
        )
        return delivered

    async def reply(
        self, connection: Connection, event_type: str, payload: dict
    ) -> bool:
        """Send an event to a single connection (e.g. a status answer)."""
        message = json.dumps(
            {**redact(payload), "eventType": event_type}, default=str
        )
        return await self._send(connection, message)

    async def _send(self, connection: Connection, message: str) -> bool:
        lock = self._send_locks.get(connection)
        if lock is None:
            # Unregistered while the publish was in flight
            return False

        try:
            async with lock:
                await connection.send_text(message)
            return True
        except Exception as e:
            logger.warning(
                "removing_stale_connection",
                user_id=self._owners.get(connection),
                error=str(e),
                error_type=type(e).__name__,
                source="bridge",
            )
            self.unregister(connection)
            return False
