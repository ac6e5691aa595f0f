"""Message relay: persist, broadcast, then notify in the background."""
from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import List, Optional, Protocol, Set
from urllib.parse import urlparse

from .connections import ConnectionRegistry
from .errors import NotFoundError, PersistenceError
from .models import Message, MessageIn
from .store import MessageStore

logger = logging.getLogger(__name__)


class Dispatcher(Protocol):
    enabled: bool

    async def dispatch(self, message: Message) -> None: ...

    def close(self) -> None: ...


class Relay:
    """Core fan-out for submitted and deleted messages.

    Persistence must succeed before anything is broadcast. Persist and
    broadcast run under one ordering lock so messages go out in the order
    they were stored. The lock therefore spans the store write: submits are
    serialized at the speed of one append, which for the JSONL store is a
    single line plus fsync. Broadcasting only enqueues frames, so the lock
    never waits on a client socket. Push dispatch starts after the broadcast as a
    detached task and cannot fail the submit.
    """

    def __init__(
        self,
        store: MessageStore,
        connections: ConnectionRegistry,
        dispatcher: Dispatcher,
        *,
        uploads_dir: Optional[str] = None,
    ) -> None:
        self.store = store
        self.connections = connections
        self.dispatcher = dispatcher
        self.uploads_dir = Path(uploads_dir) if uploads_dir else None
        self._order_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()

    async def submit(self, message: MessageIn) -> Message:
        async with self._order_lock:
            stored = await self._persist(message)
            await self.connections.broadcast("message", stored.model_dump(mode="json"))
        self._spawn_dispatch(stored)
        return stored

    async def delete(self, message_id: str) -> Message:
        async with self._order_lock:
            try:
                removed = await asyncio.to_thread(self.store.delete_by_id, message_id)
            except PersistenceError:
                raise
            except Exception as e:
                raise PersistenceError(f"failed to delete message {message_id}: {e}") from e
            if removed is None:
                raise NotFoundError(f"Message {message_id} not found")
            await self.connections.broadcast("messageDeleted", {"id": removed.id})

        if removed.image:
            await asyncio.to_thread(self._remove_image, removed.image)
        return removed

    async def list_recent(self, limit: int) -> List[Message]:
        try:
            return await asyncio.to_thread(self.store.list_recent, limit)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"failed to list messages: {e}") from e

    async def drain(self) -> None:
        """Wait for every in-flight dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Drain in-flight dispatches, then release the dispatcher's workers."""
        await self.drain()
        self.dispatcher.close()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # --------- internals ----------
    async def _persist(self, message: MessageIn) -> Message:
        try:
            return await asyncio.to_thread(self.store.append, message)
        except PersistenceError:
            logger.error("Could not persist message from %s", message.sender)
            raise
        except Exception as e:
            logger.error("Could not persist message from %s: %s", message.sender, e)
            raise PersistenceError(f"failed to persist message: {e}") from e

    def _spawn_dispatch(self, message: Message) -> None:
        task = asyncio.create_task(self._dispatch_safely(message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _dispatch_safely(self, message: Message) -> None:
        try:
            await self.dispatcher.dispatch(message)
        except Exception:
            logger.exception("Notification dispatch crashed for message %s", message.id)

    def _remove_image(self, image: str) -> None:
        if self.uploads_dir is None:
            return
        name = os.path.basename(urlparse(image).path)
        if not name:
            return
        path = self.uploads_dir / name
        try:
            if path.is_file():
                path.unlink()
        except OSError as e:
            logger.warning("Image delete error for %s: %s", path, e)
