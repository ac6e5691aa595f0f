"""Push provider integration (Firebase Cloud Messaging via firebase-admin)."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, FrozenSet, Optional, Protocol

from .errors import DispatchError
from .models import MulticastResult, PushNotification, TokenResult

logger = logging.getLogger(__name__)

INVALID_TOKEN = "invalid-registration-token"
TOKEN_NOT_REGISTERED = "registration-token-not-registered"

# Provider codes meaning the token will never work again.
PERMANENT_TOKEN_ERRORS: FrozenSet[str] = frozenset({INVALID_TOKEN, TOKEN_NOT_REGISTERED})


def normalize_error_code(code: Optional[str]) -> Optional[str]:
    """Strip the ``messaging/`` namespace some SDKs prefix codes with."""
    if not code:
        return None
    code = str(code).strip().lower()
    if code.startswith("messaging/"):
        code = code[len("messaging/"):]
    return code


def is_permanent_failure(code: Optional[str]) -> bool:
    return normalize_error_code(code) in PERMANENT_TOKEN_ERRORS


class PushProvider(Protocol):
    """Sends one notification to many device tokens.

    ``send_multicast`` is blocking; results are in the same order as
    ``notification.tokens``.
    """

    def send_multicast(self, notification: PushNotification) -> MulticastResult: ...


# -----------------------------
# Firebase
# -----------------------------
class FirebasePushProvider:
    """Thin wrapper around :mod:`firebase_admin.messaging`."""

    def __init__(
        self,
        service_account: Dict[str, Any],
        *,
        timeout_seconds: Optional[float] = None,
        app_name: Optional[str] = None,
    ) -> None:
        """
        Parameters
        ----------
        service_account : dict
            Parsed service-account JSON.
        timeout_seconds : float | None
            HTTP timeout for each FCM request. Without it a hung request
            keeps its worker thread after the dispatcher has given up.
        app_name : str | None
            Name for the firebase app instance; a unique one is generated so
            several relays can live in one process.
        """
        # Lazy import so the core and its tests run without the dep.
        import firebase_admin  # type: ignore
        from firebase_admin import credentials, messaging  # type: ignore

        self._messaging = messaging
        options = {"httpTimeout": timeout_seconds} if timeout_seconds else None
        try:
            cred = credentials.Certificate(service_account)
            self._app = firebase_admin.initialize_app(
                cred,
                options=options,
                name=app_name or f"chat-relay-{uuid.uuid4().hex[:8]}",
            )
        except (ValueError, TypeError) as e:
            raise DispatchError(f"invalid push credentials: {e}") from e
        logger.info("firebase-admin initialized (project=%s)", service_account.get("project_id", "?"))

    def send_multicast(self, notification: PushNotification) -> MulticastResult:
        m = self._messaging
        message = m.MulticastMessage(
            tokens=list(notification.tokens),
            notification=m.Notification(title=notification.title, body=notification.body),
            data=dict(notification.data),
        )
        try:
            batch = m.send_each_for_multicast(message, app=self._app)
        except Exception as e:
            raise DispatchError(f"multicast request failed: {e}") from e

        results = [
            TokenResult(success=r.success, error_code=None if r.success else self._error_code(r.exception))
            for r in batch.responses
        ]
        return MulticastResult(failure_count=batch.failure_count, results=results)

    def _error_code(self, exc: Any) -> Optional[str]:
        if exc is None:
            return None
        m = self._messaging
        if isinstance(exc, m.UnregisteredError):
            return TOKEN_NOT_REGISTERED
        # The HTTP v1 API reports malformed tokens as INVALID_ARGUMENT.
        code = normalize_error_code(getattr(exc, "code", None))
        if code in {"invalid-argument", "invalid_argument"}:
            return INVALID_TOKEN
        return code
