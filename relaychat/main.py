import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from relaychat.config import get_settings
from relaychat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from relaychat.errors import ChatError
from relaychat.repositories.conversation_repository import ConversationRepository
from relaychat.repositories.message_repository import MessageRepository
from relaychat.repositories.read_state_repository import get_read_state
from relaychat.routers.admin import router as admin_router
from relaychat.routers.chat import router as chat_router
from relaychat.routers.conversations import router as conversations_router
from relaychat.utils.realtime_bus import close_bus, get_bus


logger = logging.getLogger(__name__)


async def ensure_indexes(db) -> None:
    settings = get_settings()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await get_read_state(db, settings.read_state_backend).ensure_indexes()


@asynccontextmanager
async def lifespan(app: FastAPI):

    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    await connect_to_mongo()
    await ensure_indexes(get_database())
    await get_bus()
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="relaychat", lifespan=lifespan)


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.__class__.__name__, request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.__class__.__name__})


app.include_router(conversations_router)
app.include_router(chat_router)
app.include_router(admin_router)


@app.get("/")
async def root():

    db = get_database()
    collections = await db.list_collection_names()
    return {"message": "relaychat is running", "collections": collections}
