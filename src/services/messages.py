"""Agent-to-agent messages persisted to the messages log."""

import logging
import threading
from datetime import datetime, timezone

from models.relay import Message
from services.id_generator import generate_id
from services.state_sync import Mutation, StateSync

logger = logging.getLogger(__name__)

MESSAGES_SCHEMA = "messages"
BROADCAST_RECIPIENT = "all"


class MessageBoard:
    def __init__(self, sync: StateSync | None = None):
        self._sync = sync
        self._messages: dict[str, Message] = {}
        self._lock = threading.Lock()

    def _exists(self, message_id: str) -> bool:
        return message_id in self._messages

    def send(self, sender: str, to: str, content: str, message_type: str = "info") -> Message:
        if not sender:
            raise ValueError("sender is required")
        if not to:
            raise ValueError("to is required")
        if not content:
            raise ValueError("content is required")

        with self._lock:
            message = Message(
                id=generate_id("msg", exists=self._exists),
                sender=sender,
                to=to,
                content=content,
                timestamp=datetime.now(timezone.utc),
                message_type=message_type,
            )
            if self._sync is not None:
                self._sync.apply(Mutation(MESSAGES_SCHEMA, message.id, message.model_dump(mode="json")))
            self._messages[message.id] = message

        logger.debug(f"Message {message.id} from {sender} to {to}")
        return message

    def broadcast(self, sender: str, content: str, message_type: str = "info") -> Message:
        return self.send(sender, BROADCAST_RECIPIENT, content, message_type)

    def messages_for(self, agent_id: str) -> list[Message]:
        """Messages addressed to agent_id, broadcasts included."""
        with self._lock:
            return [m for m in self._messages.values() if m.to in (agent_id, BROADCAST_RECIPIENT)]

    def recent(self, limit: int = 50) -> list[Message]:
        with self._lock:
            messages = list(self._messages.values())
        return messages[-limit:] if limit > 0 else []

    def load(self) -> int:
        if self._sync is None:
            return 0
        records = self._sync.replay(MESSAGES_SCHEMA)
        with self._lock:
            self._messages = {r["id"]: Message.model_validate(r) for r in records}
        return len(records)
