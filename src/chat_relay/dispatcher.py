"""Push notification dispatch for newly persisted messages."""
from __future__ import annotations

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from .errors import DispatchError, PersistenceError
from .models import Message, PushNotification
from .push import PushProvider, is_permanent_failure
from .tokens import TokenRegistry

logger = logging.getLogger(__name__)


class NullDispatcher:
    """Used when no push provider is configured; every dispatch is a no-op."""

    enabled = False

    async def dispatch(self, message: Message) -> None:
        logger.debug("Push disabled; skipping notification for message %s", message.id)

    def close(self) -> None:
        pass


class PushDispatcher:
    """Notifies every other registered device about a new message.

    Provider failures are logged and swallowed. Tokens the provider reports as
    permanently invalid are cleared from the registry in one bulk update.

    Provider calls block, so they run on a small pool owned by the
    dispatcher. A hung provider can tie up at most ``max_workers`` threads
    and never the loop's default executor, which persistence relies on.
    """

    enabled = True

    def __init__(
        self,
        registry: TokenRegistry,
        provider: PushProvider,
        *,
        timeout_seconds: float = 10.0,
        body_max_chars: int = 100,
        image_placeholder: str = "sent an image",
        max_workers: int = 4,
    ) -> None:
        self.registry = registry
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        self.body_max_chars = body_max_chars
        self.image_placeholder = image_placeholder
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="push")
        self._closed = False

    def build_notification(self, message: Message, tokens: List[str]) -> PushNotification:
        body = message.text[: self.body_max_chars] if message.text else self.image_placeholder
        return PushNotification(
            title=message.sender,
            body=body,
            data={"type": "chat", "sender": message.sender, "messageId": message.id},
            tokens=tokens,
        )

    async def dispatch(self, message: Message) -> None:
        if self._closed:
            logger.debug("Dispatcher closed; skipping notification for message %s", message.id)
            return
        # Sorted so the per-token results can be matched back by position.
        tokens = sorted(self.registry.find_recipients_excluding(message.sender))
        if not tokens:
            return

        notification = self.build_notification(message, tokens)
        loop = asyncio.get_running_loop()
        try:
            result = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self.provider.send_multicast, notification),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Push for message %s timed out after %ss", message.id, self.timeout_seconds)
            return
        except DispatchError as e:
            logger.error("Push for message %s failed: %s", message.id, e)
            return
        except Exception:
            logger.exception("Unexpected push provider error for message %s", message.id)
            return

        if not result.failure_count:
            return

        dead = self._permanent_failures(tokens, result.results)
        if not dead:
            logger.info("Push for message %s: %d transient failure(s)", message.id, result.failure_count)
            return

        try:
            removed = await asyncio.to_thread(self.registry.invalidate_tokens, dead)
        except PersistenceError as e:
            logger.error("Could not clear %d invalid token(s): %s", len(dead), e)
            return
        logger.info("Removed invalid tokens: %d (users updated: %d)", len(dead), removed)

    def close(self) -> None:
        """Stop the provider pool; sends not yet started are dropped."""
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _permanent_failures(tokens: List[str], results) -> List[str]:
        dead: List[str] = []
        for token, r in zip(tokens, results):
            if not r.success and is_permanent_failure(r.error_code):
                dead.append(token)
        return dead


def make_dispatcher(
    registry: TokenRegistry,
    provider: Optional[PushProvider],
    **kwargs,
) -> PushDispatcher | NullDispatcher:
    if provider is None:
        return NullDispatcher()
    return PushDispatcher(registry, provider, **kwargs)
