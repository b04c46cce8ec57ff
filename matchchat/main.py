import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from matchchat.core.exceptions import MessagingError
from matchchat.core.settings import settings
from matchchat.database.connection import close_mongo_connection, connect_to_mongo, get_database
from matchchat.repositories.conversation_repository import ConversationRepository
from matchchat.repositories.message_repository import MessageRepository
from matchchat.routers.chat import router as chat_router
from matchchat.routers.conversations import router as conversations_router
from matchchat.utils.realtime_bus import close_bus, get_bus


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):

    await connect_to_mongo()
    db = get_database()
    await ConversationRepository(db).ensure_indexes()
    await MessageRepository(db).ensure_indexes()
    await get_bus()
    logger.info("matchchat started")
    try:
        yield
    finally:
        await close_bus()
        await close_mongo_connection()


app = FastAPI(title="Wedding Match messaging", lifespan=lifespan)


@app.exception_handler(MessagingError)
async def messaging_error_handler(request: Request, exc: MessagingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(conversations_router)
app.include_router(chat_router)

if settings.ATTACHMENT_BACKEND == "local":
    app.mount("/media", StaticFiles(directory=settings.LOCAL_MEDIA_DIR, check_dir=False), name="media")


@app.get("/health")
async def health():
    return {"status": "ok"}
