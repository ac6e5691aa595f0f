"""FastAPI application exposing the relay over HTTP and a websocket."""
from __future__ import annotations

import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as ModelValidationError

from .config import load_config, load_service_account
from .connections import ConnectionRegistry, Session
from .dispatcher import make_dispatcher
from .errors import DeliveryError, DispatchError, NotFoundError, PersistenceError, ValidationError
from .models import InboundFrame, MessageIn, TokenRegistration
from .push import FirebasePushProvider, PushProvider
from .relay import Relay
from .store import DiskMessageStore, MessageStore
from .tokens import TokenRegistry

logger = logging.getLogger(__name__)


# -----------------------------
# Utilities
# -----------------------------
def _make_store(cfg: Dict[str, Any]) -> MessageStore:
    data_dir = cfg.get("storage", {}).get("data_dir") or "data"
    return DiskMessageStore(data_dir)


def _make_registry(cfg: Dict[str, Any]) -> TokenRegistry:
    data_dir = Path(cfg.get("storage", {}).get("data_dir") or "data")
    data_dir.mkdir(parents=True, exist_ok=True)
    return TokenRegistry(data_dir / "users.json")


def _make_provider(cfg: Dict[str, Any]) -> Optional[PushProvider]:
    account = load_service_account(cfg)
    if account is None:
        return None
    timeout = float(cfg.get("push", {}).get("timeout_seconds", 10))
    try:
        return FirebasePushProvider(account, timeout_seconds=timeout)
    except DispatchError as e:
        logger.error("Push notifications disabled: %s", e)
        return None


def _redacted(cfg: Dict[str, Any]) -> Dict[str, Any]:
    out = copy.deepcopy(cfg)
    if out.get("push", {}).get("service_account"):
        out["push"]["service_account"] = "***"
    return out


def _join_identity(data: Any) -> str:
    if isinstance(data, str):
        return data.strip()
    if isinstance(data, dict):
        return str(data.get("user") or data.get("email") or "").strip()
    return ""


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    store: Optional[MessageStore] = None,
    registry: Optional[TokenRegistry] = None,
    provider: Optional[PushProvider] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])
    storage_cfg = cfg.get("storage", {})
    push_cfg = cfg.get("push", {})
    history_limit = int(storage_cfg.get("history_limit", 200))
    outbox_size = int(cfg.get("relay", {}).get("outbox_size", 256))

    # Services
    store = store or _make_store(cfg)
    registry = registry or _make_registry(cfg)
    provider = provider or _make_provider(cfg)
    connections = ConnectionRegistry()
    dispatcher = make_dispatcher(
        registry,
        provider,
        timeout_seconds=float(push_cfg.get("timeout_seconds", 10)),
        body_max_chars=int(push_cfg.get("body_max_chars", 100)),
        image_placeholder=str(push_cfg.get("image_placeholder") or "sent an image"),
        max_workers=int(push_cfg.get("max_workers", 4)),
    )
    relay = Relay(store, connections, dispatcher, uploads_dir=storage_cfg.get("uploads_dir"))
    if not dispatcher.enabled:
        logger.info("Push notifications disabled")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await relay.aclose()

    app = FastAPI(title="Chat Relay", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.relay = relay
    app.state.registry = registry
    app.state.connections = connections

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "sessions": len(connections),
            "push_enabled": dispatcher.enabled,
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        return JSONResponse(_redacted(cfg))

    # Save/update push token for a user. Expects email, token, name.
    @app.post("/api/token")
    async def register_token(req: TokenRegistration) -> Dict[str, Any]:
        try:
            user = await asyncio.to_thread(registry.upsert, req.email, req.token, req.name)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except PersistenceError:
            logger.exception("token save error")
            raise HTTPException(status_code=500, detail="server error")
        return {"ok": True, "user": user.model_dump()}

    @app.get("/api/users")
    def list_users() -> List[Dict[str, Any]]:
        return [u.model_dump() for u in registry.list_users()]

    @app.get("/api/messages")
    async def list_messages() -> List[Dict[str, Any]]:
        try:
            msgs = await relay.list_recent(history_limit)
        except PersistenceError:
            logger.exception("list messages error")
            raise HTTPException(status_code=500, detail="server error")
        return [m.model_dump(mode="json") for m in msgs]

    @app.delete("/api/messages/{message_id}")
    async def delete_message(message_id: str) -> Dict[str, Any]:
        try:
            await relay.delete(message_id)
        except NotFoundError:
            raise HTTPException(status_code=404, detail="Message not found")
        except PersistenceError:
            logger.exception("Delete message error")
            raise HTTPException(status_code=500, detail="server error")
        return {"success": True}

    # -----------------------------
    # Websocket: join / message / disconnect
    # -----------------------------
    async def handle_frame(session: Session, raw: str) -> None:
        try:
            frame = InboundFrame.model_validate_json(raw)
        except ModelValidationError:
            session.reply("error", {"detail": "malformed frame"})
            return

        if frame.type == "join":
            user = _join_identity(frame.data)
            if not user:
                session.reply("error", {"detail": "join requires a user identity"})
                return
            await connections.associate(session, user)
            return

        if frame.type == "message":
            data = dict(frame.data) if isinstance(frame.data, dict) else {}
            data.setdefault("sender", data.pop("from", None) or session.user)
            try:
                incoming = MessageIn.model_validate(data)
            except ModelValidationError:
                session.reply("error", {"detail": "invalid message: sender required, text and image must be strings"})
                return
            try:
                await relay.submit(incoming)
            except PersistenceError:
                session.reply("error", {"detail": "message could not be saved"})
            return

        session.reply("error", {"detail": f"unknown event type: {frame.type}"})

    @app.websocket("/ws")
    async def ws_endpoint(websocket: WebSocket) -> None:
        session = Session(websocket, outbox_size=outbox_size)
        # Registered before the handshake completes so no broadcast is missed.
        await connections.register(session)
        writer: Optional[asyncio.Task] = None
        try:
            await websocket.accept()
            writer = asyncio.create_task(session.run_writer())
            while True:
                raw = await websocket.receive_text()
                try:
                    await handle_frame(session, raw)
                except DeliveryError as e:
                    logger.warning("Reply to session %s dropped: %s", session.id, e)
        except WebSocketDisconnect:
            pass
        finally:
            await connections.unregister(session)
            if writer is not None:
                writer.cancel()

    return app
