import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from pymongo.errors import PyMongoError

from chatsync.config import get_settings
from chatsync.database.connection import close_mongo_connection, connect_to_mongo
from chatsync.repositories.conversation_repository import ConversationRepository
from chatsync.repositories.message_repository import MessageRepository
from chatsync.repositories.read_marker_repository import ReadMarkerRepository
from chatsync.routers.sync import forward_events, router as sync_router
from chatsync.services.engine import ChatSyncEngine
from chatsync.utils.change_feed import close_change_feed, get_change_feed
from chatsync.utils.kv_store import JsonFileStore


logger = logging.getLogger(__name__)

# grace period for the final read-marker flush before the DB client closes
SHUTDOWN_FLUSH_GRACE_S = 2.0


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def build_engine() -> ChatSyncEngine:
    settings = get_settings()
    db = await connect_to_mongo()
    markers = ReadMarkerRepository(db, settings.user_id)
    messages = MessageRepository(db)
    conversations = ConversationRepository(db)
    try:
        await markers.ensure_indexes()
        await messages.ensure_indexes()
        await conversations.ensure_indexes()
    except PyMongoError:
        logger.warning("Could not ensure indexes; continuing without them", exc_info=True)
    try:
        direct_ids = await conversations.list_direct_ids(settings.user_id)
    except PyMongoError:
        logger.warning("Could not list direct conversations; only clubs are subscribed", exc_info=True)
        direct_ids = []
    feed = await get_change_feed(settings.redis_url)
    return ChatSyncEngine(
        user_id=settings.user_id,
        kv=JsonFileStore(settings.state_path),
        sink=markers,
        feed=feed,
        settings=settings,
        club_ids=settings.club_ids,
        direct_ids=direct_ids,
        counts_source=lambda: conversations.fetch_unread_counts(settings.user_id, settings.club_ids),
        catch_up=messages.get_for_conversation_since,
        history=messages.get_recent,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(get_settings().log_level)
    engine = await build_engine()
    unsubscribers = forward_events(engine)
    await engine.start()
    app.state.engine = engine
    try:
        yield
    finally:
        app.state.engine = None
        for unsubscribe in unsubscribers:
            unsubscribe()
        flush = await engine.shutdown()
        done, _ = await asyncio.wait({flush}, timeout=SHUTDOWN_FLUSH_GRACE_S)
        if not done:
            logger.warning("Final read-marker flush still running at shutdown")
        await close_change_feed()
        await close_mongo_connection()


app = FastAPI(title="Chat read-status sync", lifespan=lifespan)


app.include_router(sync_router)


@app.get("/")
async def root():
    engine = getattr(app.state, "engine", None)
    if engine is None:
        return {"status": "starting"}
    return {
        "status": "ok",
        "subscriptions": {s.scope.name: s.state.value for s in engine.subscriptions.subscriptions()},
        "queued_syncs": len(engine.queue),
    }
