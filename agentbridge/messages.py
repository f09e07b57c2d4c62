"""Per-recipient mailbox with acknowledgment."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime, timezone
from threading import Lock

from agentbridge.events import EventBroadcaster
from agentbridge.schemas import Message

logger = logging.getLogger(__name__)


class MessageNotFoundError(Exception):
    """Raised when a message id is unknown."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageStore:
    """Append-only message store indexed by id and by recipient.

    Acknowledged messages stay retrievable by id but leave the recipient's
    pending queue for good.
    """

    def __init__(
        self,
        events: EventBroadcaster | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._events = events
        self._clock = clock
        self._by_id: dict[str, Message] = {}
        # recipient -> pending messages keyed by id, in publish order
        self._pending: dict[str, dict[str, Message]] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        return len(self._by_id)

    def publish(
        self,
        recipient: str,
        content: str,
        sender: str | None = None,
        contract_id: str | None = None,
    ) -> Message:
        """Store a new, unacknowledged message for ``recipient``."""
        message = Message(
            id=f"msg-{uuid.uuid4().hex[:16]}",
            recipient=recipient,
            sender=sender,
            content=content,
            timestamp=self._clock(),
            contract_id=contract_id,
        )
        with self._lock:
            self._by_id[message.id] = message
            self._pending.setdefault(recipient, {})[message.id] = message

        logger.debug(f"Stored message {message.id} for {recipient}")
        return message

    def get(self, message_id: str) -> Message:
        """Look up any message, acknowledged or not.

        Raises:
            MessageNotFoundError: If the id is unknown
        """
        with self._lock:
            message = self._by_id.get(message_id)
        if message is None:
            raise MessageNotFoundError(message_id)
        return message

    def fetch_pending(self, recipient: str) -> list[Message]:
        """Return unacknowledged messages for ``recipient``, oldest first."""
        with self._lock:
            return list(self._pending.get(recipient, {}).values())

    def acknowledge(self, ids: Iterable[str]) -> int:
        """Mark messages as acknowledged.

        Unknown and already-acknowledged ids are skipped and not counted.

        Returns:
            Number of messages newly acknowledged
        """
        acknowledged: list[Message] = []
        with self._lock:
            for message_id in ids:
                message = self._by_id.get(message_id)
                if message is None or message.acknowledged:
                    continue
                message.acknowledged = True
                pending = self._pending.get(message.recipient)
                if pending is not None:
                    pending.pop(message_id, None)
                    if not pending:
                        del self._pending[message.recipient]
                acknowledged.append(message)

        if self._events is not None:
            for message in acknowledged:
                self._events.publish(
                    "message.acknowledged",
                    {"messageId": message.id, "recipient": message.recipient},
                )

        if acknowledged:
            logger.info(f"Acknowledged {len(acknowledged)} messages")
        return len(acknowledged)

    def clear(self) -> None:
        with self._lock:
            self._by_id.clear()
            self._pending.clear()
