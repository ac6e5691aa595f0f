"""Message persistence: in-memory and append-only JSONL stores (thread-safe)."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
import uuid
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import PersistenceError
from .models import Message, MessageIn, utc_now

logger = logging.getLogger(__name__)


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def write_json(path: Path, obj: Any) -> None:
    _atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


def load_json_list(path: Path) -> List[Any]:
    """Read a JSON list; a corrupt file is moved aside and treated as empty."""
    if not path.exists():
        return []
    try:
        data = read_json(path)
    except (OSError, ValueError):
        bad = path.with_suffix(".corrupt.json")
        logger.warning("Corrupt store file %s, moving it to %s", path, bad)
        try:
            path.rename(bad)
        except OSError as e:
            logger.warning("Could not move corrupt file %s: %s", path, e)
        return []
    return data if isinstance(data, list) else []


def append_jsonl(path: Path, item: Dict[str, Any]) -> None:
    """Append one JSON line and fsync it; a failed write is cut back off."""
    line = json.dumps(item, ensure_ascii=False)
    with path.open("a", encoding="utf-8") as f:
        start = f.tell()
        try:
            f.write(line + "\n")
            f.flush()
            os.fsync(f.fileno())
        except OSError:
            try:
                f.truncate(start)
            except OSError as e:
                logger.warning("Could not trim partial line in %s: %s", path, e)
            raise


def read_jsonl(path: Path) -> Iterator[Dict[str, Any]]:
    if not path.exists():
        return
    with path.open("r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as e:
                # A torn final line from a crashed write is skipped.
                logger.warning("Skipping corrupt line %d in %s: %s", line_no, path, e)


# -----------------------------
# Store contract
# -----------------------------
class MessageStore(ABC):
    """Append-only message log with delete by id."""

    @abstractmethod
    def append(self, message: MessageIn) -> Message:
        """Persist ``message`` and return it with its assigned id and timestamp."""

    @abstractmethod
    def list_recent(self, limit: int) -> List[Message]:
        """Return up to ``limit`` newest messages, oldest first."""

    @abstractmethod
    def get(self, message_id: str) -> Optional[Message]:
        pass

    @abstractmethod
    def delete_by_id(self, message_id: str) -> Optional[Message]:
        """Remove and return the message, or None if the id is unknown."""


class InMemoryMessageStore(MessageStore):
    """Process-local store; messages are kept in insertion order."""

    def __init__(self) -> None:
        self._messages: List[Message] = []
        self._lock = threading.RLock()

    def append(self, message: MessageIn) -> Message:
        stored = Message(
            id=uuid.uuid4().hex,
            sender=message.sender,
            text=message.text,
            image=message.image,
            created_at=utc_now(),
        )
        with self._lock:
            try:
                self._record_append(stored)
            except OSError as e:
                raise PersistenceError(f"failed to persist message: {e}") from e
            self._messages.append(stored)
        return stored

    def list_recent(self, limit: int) -> List[Message]:
        with self._lock:
            # sorted() is stable, so equal timestamps keep insertion order
            ordered = sorted(self._messages, key=lambda m: m.created_at)
        if limit <= 0:
            return []
        return ordered[-limit:]

    def get(self, message_id: str) -> Optional[Message]:
        with self._lock:
            for m in self._messages:
                if m.id == message_id:
                    return m
        return None

    def delete_by_id(self, message_id: str) -> Optional[Message]:
        with self._lock:
            for idx, m in enumerate(self._messages):
                if m.id == message_id:
                    break
            else:
                return None
            try:
                self._record_delete(m)
            except OSError as e:
                raise PersistenceError(f"failed to delete message {message_id}: {e}") from e
            return self._messages.pop(idx)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    # Hooks for durable subclasses; called with the lock held, before the
    # in-memory list changes, so a failed write leaves nothing to undo.
    def _record_append(self, message: Message) -> None:
        pass

    def _record_delete(self, message: Message) -> None:
        pass


class DiskMessageStore(InMemoryMessageStore):
    """Append-only JSONL backed store.

    Layout:
        data_dir/
          messages.jsonl   # {"op": "append", "message": {...}} | {"op": "delete", "id": ...}

    Each change appends one line. Once dead lines (deleted messages and their
    tombstones) outnumber live messages and pass ``compact_min_lines``, the
    log is rewritten atomically with only the live messages.
    """

    def __init__(self, data_dir: str, *, compact_min_lines: int = 1000) -> None:
        super().__init__()
        self.root = Path(data_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        self.path = self.root / "messages.jsonl"
        self.compact_min_lines = compact_min_lines
        self._lines = 0
        self._load()

    def _load(self) -> None:
        live: Dict[str, Message] = {}
        for row in read_jsonl(self.path):
            self._lines += 1
            op = row.get("op")
            if op == "append":
                try:
                    msg = Message.model_validate(row.get("message"))
                except ValueError:
                    logger.warning("Skipping malformed message row in %s", self.path)
                    continue
                live[msg.id] = msg
            elif op == "delete":
                live.pop(str(row.get("id")), None)
        # dicts keep insertion order, which is append order
        self._messages = list(live.values())

    def _record_append(self, message: Message) -> None:
        append_jsonl(self.path, {"op": "append", "message": message.model_dump(mode="json")})
        self._lines += 1

    def _record_delete(self, message: Message) -> None:
        append_jsonl(self.path, {"op": "delete", "id": message.id})
        self._lines += 1
        # message is still in the list here; it leaves right after this returns
        live = len(self._messages) - 1
        if self._lines >= self.compact_min_lines and self._lines - live > live:
            try:
                self._compact([m for m in self._messages if m.id != message.id])
            except OSError as e:
                # the tombstone is already durable; compaction can wait
                logger.warning("Compaction of %s failed: %s", self.path, e)

    def _compact(self, live: List[Message]) -> None:
        text = "".join(
            json.dumps({"op": "append", "message": m.model_dump(mode="json")}, ensure_ascii=False) + "\n"
            for m in live
        )
        _atomic_write_text(self.path, text)
        self._lines = len(live)
        logger.info("Compacted %s to %d messages", self.path, len(live))

    @property
    def log_lines(self) -> int:
        return self._lines
