"""Pydantic data models shared by the relay core and the HTTP/websocket layer."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------------
# Stored records
# -----------------------------
class Message(BaseModel):
    """A persisted chat message. Never updated after creation."""

    model_config = {"frozen": True}

    id: str
    sender: str
    text: Optional[str] = None
    image: Optional[str] = None
    created_at: datetime


class User(BaseModel):
    """A push-token registration keyed by identity (the user's email)."""

    email: str
    name: Optional[str] = None
    token: Optional[str] = None


# -----------------------------
# Inbound payloads
# -----------------------------
class MessageIn(BaseModel):
    sender: str = Field(..., min_length=1)
    text: Optional[str] = None
    image: Optional[str] = None


class TokenRegistration(BaseModel):
    email: Optional[str] = None
    token: Optional[str] = None
    name: Optional[str] = None


class InboundFrame(BaseModel):
    """Client -> server websocket frame."""

    type: str  # join | message
    data: Any = None


class OutboundFrame(BaseModel):
    """Server -> client websocket frame."""

    type: str  # message | messageDeleted | error
    data: Dict[str, Any] = Field(default_factory=dict)


# -----------------------------
# Push provider contract
# -----------------------------
class PushNotification(BaseModel):
    title: str
    body: str
    data: Dict[str, str]
    tokens: List[str]


class TokenResult(BaseModel):
    success: bool
    error_code: Optional[str] = None


class MulticastResult(BaseModel):
    failure_count: int = 0
    results: List[TokenResult] = Field(default_factory=list)
