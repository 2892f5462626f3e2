from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from logging_config import get_logger
from schemas.events import UserEntry

logger = get_logger(__name__)


@dataclass
class Client:
    connection_id: str
    display_name: str
    joined_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_typing: bool = False

    def to_entry(self) -> UserEntry:
        return UserEntry(id=self.connection_id, username=self.display_name, joinedAt=self.joined_at)


class MemoryBackend:
    """In-process registry of joined clients, keyed by connection id.

    Not synchronized on its own: every caller must hold the relay lock.
    """

    def __init__(self):
        self.clients: Dict[str, Client] = {}

    def add_client(self, connection_id: str, display_name: str) -> Client:
        """Register a client; joining again on the same connection replaces the entry."""
        previous = self.clients.get(connection_id)
        client = Client(connection_id=connection_id, display_name=display_name)
        self.clients[connection_id] = client
        if previous:
            logger.debug(f"Connection {connection_id} re-joined: {previous.display_name} -> {display_name}")
        else:
            logger.debug(f"Connection {connection_id} joined as {display_name} ({len(self.clients)} online)")
        return client

    def remove_client(self, connection_id: str) -> Optional[Client]:
        client = self.clients.pop(connection_id, None)
        if client:
            logger.debug(f"Connection {connection_id} ({client.display_name}) removed ({len(self.clients)} online)")
        return client

    def get_client(self, connection_id: str) -> Optional[Client]:
        return self.clients.get(connection_id)

    def list_clients(self) -> List[Client]:
        return list(self.clients.values())

    def count(self) -> int:
        return len(self.clients)

    def clear(self):
        self.clients.clear()
