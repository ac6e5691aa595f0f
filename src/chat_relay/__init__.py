"""Group-chat relay: message fan-out over websockets plus push notifications.

This package provides a FastAPI application factory named ``create_app``
(see :func:`chat_relay.server.create_app`).

Typical usage
-------------
from chat_relay import create_app
app = create_app()

or, from the provided launcher:

python scripts/run_server.py --host 127.0.0.1 --port 4000
"""

from __future__ import annotations

from .server import create_app

__all__ = ["create_app", "__version__", "get_version"]

__version__ = "0.1.0"


def get_version() -> str:
    """Return the package version."""
    return __version__
