"""Configuration loading utilities for the chat relay.

This module handles layered configuration:
1. Explicit path argument (highest precedence)
2. Environment variable CHAT_RELAY_CONFIG
3. Fallback to "config/default.yaml"

It also supports optional overrides from environment variables with prefix
``CHAT_RELAY__`` (e.g., CHAT_RELAY__PUSH__TIMEOUT_SECONDS=5).
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULTS: Dict[str, Any] = {
    "server": {"cors_origins": ["*"]},
    "storage": {"data_dir": "data", "history_limit": 200, "uploads_dir": None},
    "relay": {"outbox_size": 256},
    "push": {
        "enabled": True,
        "service_account": None,
        "timeout_seconds": 10,
        "body_max_chars": 100,
        "image_placeholder": "sent an image",
        "max_workers": 4,
    },
}


def _merge(base: Dict[str, Any], extra: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(base)
    for key, value in extra.items():
        if isinstance(value, dict) and isinstance(out.get(key), dict):
            out[key] = _merge(out[key], value)
        else:
            out[key] = value
    return out


def _apply_env_overrides(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Apply environment variable overrides with prefix CHAT_RELAY__."""
    prefix = "CHAT_RELAY__"
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        # e.g., CHAT_RELAY__STORAGE__DATA_DIR -> cfg["storage"]["data_dir"]
        parts = key[len(prefix):].lower().split("__")
        sub = cfg
        for p in parts[:-1]:
            if p not in sub or not isinstance(sub[p], dict):
                sub[p] = {}
            sub = sub[p]
        leaf = parts[-1]
        # Attempt to parse simple types (bool, int, float)
        if value.lower() in {"true", "false"}:
            sub[leaf] = value.lower() == "true"
        else:
            try:
                if "." in value:
                    sub[leaf] = float(value)
                else:
                    sub[leaf] = int(value)
            except ValueError:
                sub[leaf] = value
    return cfg


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load YAML configuration for the relay.

    Parameters
    ----------
    path : str | None
        Optional path to a configuration file. If not provided, the
        environment variable ``CHAT_RELAY_CONFIG`` is consulted. As a
        last resort ``config/default.yaml`` is used.

    Returns
    -------
    Dict[str, Any]
        Defaults merged with the parsed file, environment overrides applied.
    """
    if path is None:
        path = os.environ.get("CHAT_RELAY_CONFIG", "config/default.yaml")

    path_obj = Path(path)
    if not path_obj.exists():
        logger.warning("Config file not found at %s. Using defaults.", path_obj)
        return _apply_env_overrides(copy.deepcopy(DEFAULTS))

    with path_obj.open("r", encoding="utf-8") as f:
        try:
            cfg = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise RuntimeError(f"Failed to parse config file {path_obj}: {e}")

    if not isinstance(cfg, dict):
        raise RuntimeError(f"Invalid config format in {path_obj}, expected dict.")

    return _apply_env_overrides(_merge(DEFAULTS, cfg))


def load_service_account(cfg: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Return push-provider credentials, or None when push should stay off.

    ``FIREBASE_SERVICE_ACCOUNT`` (inline JSON) wins over ``push.service_account``
    (a file path). Unreadable or invalid credentials disable push with a log
    line instead of failing startup.
    """
    push_cfg = cfg.get("push", {})
    if not push_cfg.get("enabled", True):
        logger.info("Push notifications disabled by config")
        return None

    raw = os.environ.get("FIREBASE_SERVICE_ACCOUNT")
    source = "FIREBASE_SERVICE_ACCOUNT"
    if not raw and push_cfg.get("service_account"):
        source = str(push_cfg["service_account"])
        try:
            raw = Path(source).read_text(encoding="utf-8")
        except OSError as e:
            logger.error("Cannot read service account %s: %s", source, e)
            return None

    if not raw:
        logger.info("Push service account is not configured, push notifications disabled")
        return None

    try:
        account = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.error("Invalid service account JSON in %s: %s", source, e)
        return None
    if not isinstance(account, dict):
        logger.error("Invalid service account in %s, expected a JSON object", source)
        return None
    return account
