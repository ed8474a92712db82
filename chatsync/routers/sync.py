import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request, WebSocket, WebSocketDisconnect

from chatsync.errors import InvalidConversationKey
from chatsync.schemas.conversation import ConversationRef
from chatsync.services.engine import ChatSyncEngine
from chatsync.utils.event_bus import ConnectivityWarning, SyncWarning, UnreadChanged
from chatsync.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])
manager = ConnectionManager()
_broadcasts: set = set()


def get_engine(request: Request) -> ChatSyncEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine is not running")
    return engine


def parse_key(key: str) -> ConversationRef:
    try:
        return ConversationRef.parse(key)
    except InvalidConversationKey as exc:
        raise HTTPException(status_code=400, detail=str(exc))


def _broadcast(payload: Dict[str, Any]) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return
    task = loop.create_task(manager.broadcast(json.dumps(payload)))
    _broadcasts.add(task)
    task.add_done_callback(_broadcasts.discard)


def forward_events(engine: ChatSyncEngine) -> List[Callable[[], None]]:
    """Relay badge and warning events to connected websocket clients."""
    bus = engine.bus
    return [
        bus.subscribe(
            UnreadChanged,
            lambda e: _broadcast({"type": "unread_changed", "conversation_key": e.conversation_key, "count": e.count, "total": e.total}),
        ),
        bus.subscribe(
            SyncWarning,
            lambda e: _broadcast({"type": "sync_warning", "message": e.message, "conversation_keys": list(e.dropped_keys)}),
        ),
        bus.subscribe(
            ConnectivityWarning,
            lambda e: _broadcast({"type": "connectivity_warning", "scope": e.scope, "failed_resets": e.failed_resets}),
        ),
    ]


@router.get("/unread")
async def get_unread(engine: ChatSyncEngine = Depends(get_engine)):
    return engine.unread_snapshot().model_dump()


@router.post("/conversations/{key}/open")
async def open_conversation(key: str, engine: ChatSyncEngine = Depends(get_engine)):
    ref = parse_key(key)
    await engine.open_conversation(ref)
    return {"conversation_key": ref.key, "active": True, "read_through": engine.read_status.get_read_through(ref.key)}


@router.post("/conversations/{key}/close")
async def close_conversation(key: str, engine: ChatSyncEngine = Depends(get_engine)):
    ref = parse_key(key)
    await engine.close_conversation(ref)
    return {"conversation_key": ref.key, "active": False}


@router.post("/conversations/{key}/read")
async def mark_read(key: str, body: Optional[Dict[str, Any]] = Body(None), engine: ChatSyncEngine = Depends(get_engine)):
    ref = parse_key(key)
    at_ms = None
    if body and isinstance(body, dict) and body.get("at_ms") is not None:
        try:
            at_ms = int(body["at_ms"])
        except (TypeError, ValueError):
            raise HTTPException(status_code=422, detail="at_ms must be an integer")
    read_through = engine.mark_read(ref, at_ms)
    return {"conversation_key": ref.key, "read_through": read_through}


@router.get("/conversations/{key}/messages")
async def list_messages(key: str, engine: ChatSyncEngine = Depends(get_engine)):
    ref = parse_key(key)
    items = [m.model_dump(mode="json") for m in engine.messages(ref)]
    return {"items": items}


@router.get("/read-status")
async def read_status(engine: ChatSyncEngine = Depends(get_engine)):
    return {"read_through": engine.read_status.snapshot(), "active": engine.tracker.active_keys()}


@router.get("/last-messages")
async def last_messages(engine: ChatSyncEngine = Depends(get_engine)):
    return {key: message.model_dump(mode="json") for key, message in engine.last_messages().items()}


@router.get("/queue")
async def list_queue(engine: ChatSyncEngine = Depends(get_engine)):
    return {"items": [item.model_dump(mode="json") for item in engine.queued()]}


@router.post("/reconcile")
async def reconcile(engine: ChatSyncEngine = Depends(get_engine)):
    ok = await engine.reconcile()
    return {"reconciled": ok, "unread": engine.unread_snapshot().model_dump()}


@router.websocket("/ws")
async def sync_socket(websocket: WebSocket):
    await manager.connect(websocket)
    engine = getattr(websocket.app.state, "engine", None)
    if engine is not None:
        snapshot = engine.unread_snapshot()
        await websocket.send_text(json.dumps({"type": "unread_snapshot", **snapshot.model_dump()}))
    try:
        while True:
            # clients only listen; anything they send is ignored
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
