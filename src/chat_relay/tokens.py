"""Push-token registry keyed by user identity (thread-safe, optionally on disk)."""
from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set

from .errors import PersistenceError, ValidationError
from .models import User
from .store import load_json_list, write_json

logger = logging.getLogger(__name__)


class TokenRegistry:
    """Maps each identity to at most one current push token.

    With ``path`` set, users are loaded from and saved to that JSON file after
    every change. Writes happen under the lock and are rolled back on failure.
    """

    def __init__(self, path: Optional[str | Path] = None) -> None:
        self.path = Path(path) if path else None
        self._users: Dict[str, User] = {}
        self._lock = threading.RLock()
        if self.path is not None:
            for row in load_json_list(self.path):
                try:
                    user = User.model_validate(row)
                except ValueError:
                    logger.warning("Skipping malformed user row in %s", self.path)
                    continue
                self._users[user.email] = user

    def upsert(self, email: Optional[str], token: Optional[str], name: Optional[str] = None) -> User:
        """Create or update ``email``'s record with ``token`` (and ``name`` if given)."""
        email = (email or "").strip()
        token = (token or "").strip()
        if not email or not token:
            raise ValidationError("email and token required")

        with self._lock:
            previous = self._users.get(email)
            update = {"token": token}
            if name:
                update["name"] = name
            user = previous.model_copy(update=update) if previous else User(email=email, name=name or None, token=token)
            self._users[email] = user
            try:
                self._save()
            except OSError as e:
                if previous is None:
                    del self._users[email]
                else:
                    self._users[email] = previous
                raise PersistenceError(f"failed to save token for {email}: {e}") from e
        return user

    def find_recipients_excluding(self, email: str) -> Set[str]:
        """Return the de-duplicated tokens of every other user that has one."""
        with self._lock:
            return {u.token for u in self._users.values() if u.email != email and u.token}

    def invalidate_tokens(self, tokens: Iterable[str]) -> int:
        """Clear the token of every user holding one of ``tokens``.

        Unknown or already-cleared tokens are ignored. Returns the number of
        users whose token was cleared.
        """
        dead = set(tokens)
        if not dead:
            return 0
        with self._lock:
            changed = {
                email: user
                for email, user in self._users.items()
                if user.token in dead
            }
            if not changed:
                return 0
            for email, user in changed.items():
                self._users[email] = user.model_copy(update={"token": None})
            try:
                self._save()
            except OSError as e:
                self._users.update(changed)
                raise PersistenceError(f"failed to invalidate tokens: {e}") from e
        return len(changed)

    def get(self, email: str) -> Optional[User]:
        with self._lock:
            return self._users.get(email)

    def list_users(self) -> List[User]:
        with self._lock:
            return list(self._users.values())

    def _save(self) -> None:
        if self.path is None:
            return
        write_json(self.path, [u.model_dump() for u in self._users.values()])
