import asyncio
import time
import uuid
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from backend import Client, MemoryBackend
from constants import (
    MAX_CONNECTIONS,
    MAX_DISPLAY_NAME_LENGTH,
    MAX_MESSAGE_LENGTH,
    REJECT_UNJOINED_SENDERS,
    SEND_QUEUE_SIZE,
    SEND_TIMEOUT_SECONDS,
    SHUTDOWN_DRAIN_SECONDS,
)
from logging_config import get_logger
from schemas.events import ChatMessage, OutboundEnvelope, PresenceNotice, UserEntry, UserTyping, envelope

logger = get_logger(__name__)

Sender = Callable[[str], Awaitable[None]]


class RelayError(Exception):
    code = "relay_error"

class InvalidEventError(RelayError):
    code = "invalid_event"

class NotJoinedError(RelayError):
    code = "not_joined"

class RelayFullError(RelayError):
    code = "relay_full"


class Connection:
    """Outbound side of one client connection.

    Events are queued without blocking and written by a dedicated task, so a
    stalled client only ever delays itself.
    """

    def __init__(self, connection_id: str, sender: Sender, queue_size: int, send_timeout: float):
        self.connection_id = connection_id
        self.sender = sender
        self.send_timeout = send_timeout
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self.dropped = 0
        self.closed = False
        self.writer_task = asyncio.create_task(self._write_loop())

    def enqueue(self, text: str) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(text)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.warning(f"Outbound queue full for connection {self.connection_id}, dropped event ({self.dropped} dropped so far)")
            return False

    async def _write_loop(self):
        # wait_for may absorb a cancel that lands as the send completes,
        # so the closed flag is what ends the loop
        while not self.closed:
            text = await self.queue.get()
            try:
                await asyncio.wait_for(self.sender(text), timeout=self.send_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Send to connection {self.connection_id} timed out after {self.send_timeout}s, event skipped")
            except Exception as e:
                logger.warning(f"Send to connection {self.connection_id} failed: {e}")
            finally:
                self.queue.task_done()

    async def flush(self):
        await self.queue.join()

    async def close(self):
        self.closed = True
        self.writer_task.cancel()
        done, _ = await asyncio.wait({self.writer_task}, timeout=self.send_timeout)
        if not done:
            logger.warning(f"Writer for connection {self.connection_id} did not stop within {self.send_timeout}s")


class PresenceRelay:
    """Registry owner and event router for one chat room.

    Every registry read or write happens under ``self._lock``. Broadcasts
    enqueue onto each recipient's queue while the lock is held, which keeps a
    single global event order across clients without waiting on any socket.
    """

    def __init__(
        self,
        max_message_length: int = MAX_MESSAGE_LENGTH,
        max_display_name_length: int = MAX_DISPLAY_NAME_LENGTH,
        send_queue_size: int = SEND_QUEUE_SIZE,
        send_timeout: float = SEND_TIMEOUT_SECONDS,
        max_connections: int = MAX_CONNECTIONS,
        reject_unjoined: bool = REJECT_UNJOINED_SENDERS,
    ):
        self.backend = MemoryBackend()
        self.max_message_length = max_message_length
        self.max_display_name_length = max_display_name_length
        self.send_queue_size = send_queue_size
        self.send_timeout = send_timeout
        self.max_connections = max_connections
        self.reject_unjoined = reject_unjoined
        self._connections: Dict[str, Connection] = {}
        self._lock = asyncio.Lock()
        self._last_message_id = 0

    async def connect(self, sender: Sender) -> str:
        """Allocate a connection. The client is not registered until it joins."""
        async with self._lock:
            if self.max_connections and len(self._connections) >= self.max_connections:
                logger.warning(f"Connection refused: relay is full ({len(self._connections)}/{self.max_connections})")
                raise RelayFullError("Relay is full")
            connection_id = uuid.uuid4().hex
            self._connections[connection_id] = Connection(
                connection_id, sender, self.send_queue_size, self.send_timeout
            )
        logger.info(f"Connection {connection_id} opened ({len(self._connections)} open)")
        return connection_id

    async def join(self, connection_id: str, display_name: str) -> Client:
        name = display_name.strip() if isinstance(display_name, str) else ""
        if not name:
            raise InvalidEventError("Display name must not be empty")
        if len(name) > self.max_display_name_length:
            raise InvalidEventError(f"Display name must be at most {self.max_display_name_length} characters")

        async with self._lock:
            if connection_id not in self._connections:
                raise RelayError(f"Connection {connection_id} is not open")
            client = self.backend.add_client(connection_id, name)
            notice = PresenceNotice(username=name, message=f"{name} joined the chat", timestamp=_now())
            self._broadcast(envelope("user_joined", notice), exclude=connection_id)
            self._broadcast_users_list()

        logger.info(f"{name} joined the chat (connection {connection_id})")
        return client

    async def send_message(self, connection_id: str, body: str) -> Optional[ChatMessage]:
        async with self._lock:
            # Unjoined senders are handled before the body is looked at
            client = self._require_client(connection_id, "send_message")
            if client is None:
                return None
            if not isinstance(body, str) or not body.strip():
                raise InvalidEventError("Message must not be empty")
            if len(body) > self.max_message_length:
                raise InvalidEventError(f"Message must be at most {self.max_message_length} characters")
            chat = ChatMessage(
                id=self._next_message_id(),
                username=client.display_name,
                message=body,
                timestamp=_now(),
            )
            self._broadcast(envelope("receive_message", chat))

        logger.debug(f"Message {chat.id} from {chat.username} relayed")
        return chat

    async def set_typing(self, connection_id: str, is_typing: bool) -> Optional[UserTyping]:
        async with self._lock:
            client = self._require_client(connection_id, "typing")
            if client is None:
                return None
            client.is_typing = bool(is_typing)
            state = UserTyping(username=client.display_name, isTyping=client.is_typing)
            self._broadcast(envelope("user_typing", state), exclude=connection_id)
        return state

    async def disconnect(self, connection_id: str) -> Optional[Client]:
        async with self._lock:
            connection = self._connections.pop(connection_id, None)
            client = self.backend.remove_client(connection_id)
            if client:
                if client.is_typing:
                    stopped = UserTyping(username=client.display_name, isTyping=False)
                    self._broadcast(envelope("user_typing", stopped))
                notice = PresenceNotice(
                    username=client.display_name,
                    message=f"{client.display_name} left the chat",
                    timestamp=_now(),
                )
                self._broadcast(envelope("user_left", notice))
                self._broadcast_users_list()

        if connection:
            await connection.close()
        if client:
            logger.info(f"{client.display_name} disconnected (connection {connection_id})")
        else:
            logger.info(f"Connection {connection_id} closed before joining")
        return client

    async def snapshot(self) -> List[UserEntry]:
        async with self._lock:
            return [client.to_entry() for client in self.backend.list_clients()]

    async def send_to(self, connection_id: str, message: OutboundEnvelope) -> bool:
        """Queue an event for a single connection, e.g. an error reply."""
        async with self._lock:
            connection = self._connections.get(connection_id)
            if connection is None:
                return False
            return connection.enqueue(message.to_text())

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued event has been written or given up on.

        Returns False if ``timeout`` expired first.
        """
        async with self._lock:
            connections = list(self._connections.values())
        if not connections:
            return True
        flushes = {asyncio.ensure_future(connection.flush()) for connection in connections}
        done, pending = await asyncio.wait(flushes, timeout=timeout)
        for flush in pending:
            flush.cancel()
        return not pending

    async def shutdown(self, drain_timeout: Optional[float] = SHUTDOWN_DRAIN_SECONDS):
        if not await self.drain(timeout=drain_timeout):
            logger.warning(f"Outbound queues not drained within {drain_timeout}s, closing anyway")
        async with self._lock:
            connections = list(self._connections.values())
            self._connections.clear()
            self.backend.clear()
        for connection in connections:
            await connection.close()
        logger.info(f"Relay shut down, closed {len(connections)} connections")

    @property
    def open_connections(self) -> int:
        return len(self._connections)

    def _require_client(self, connection_id: str, event: str) -> Optional[Client]:
        client = self.backend.get_client(connection_id)
        if client is None:
            if self.reject_unjoined:
                raise NotJoinedError("Join the chat before sending events")
            logger.debug(f"Dropped {event} from connection {connection_id}: not joined")
        return client

    def _broadcast_users_list(self):
        users = [client.to_entry() for client in self.backend.list_clients()]
        self._broadcast(envelope("users_list", users))

    def _broadcast(self, message: OutboundEnvelope, exclude: Optional[str] = None):
        text = message.to_text()
        recipients = self._recipients(exclude)
        delivered = sum(1 for connection in recipients if connection.enqueue(text))
        logger.debug(f"Broadcast {message.event} to {delivered}/{len(recipients)} clients")

    def _recipients(self, exclude: Optional[str]) -> List[Connection]:
        # Only joined clients receive broadcasts
        return [
            self._connections[client.connection_id]
            for client in self.backend.list_clients()
            if client.connection_id != exclude and client.connection_id in self._connections
        ]

    def _next_message_id(self) -> int:
        self._last_message_id = max(int(time.time() * 1000), self._last_message_id + 1)
        return self._last_message_id


def _now() -> datetime:
    return datetime.now(timezone.utc)
