"""Exception taxonomy for the relay core.

Errors on the critical path (validation, lookup, persistence) propagate to
the immediate caller. Per-recipient errors (one session, one push token) are
contained where they happen and only logged.
"""
from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by :mod:`chat_relay`."""


class ValidationError(RelayError):
    """Malformed inbound request; nothing was changed."""


class NotFoundError(RelayError):
    """The targeted record does not exist."""


class PersistenceError(RelayError):
    """Storage read/write failed; the current operation was aborted."""


class DeliveryError(RelayError):
    """A frame could not be handed to a single session."""


class DispatchError(RelayError):
    """The push provider request failed as a whole."""
