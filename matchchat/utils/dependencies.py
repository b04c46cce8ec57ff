from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from matchchat.core.exceptions import NotFound
from matchchat.database.connection import mongo_db_dependency
from matchchat.repositories.conversation_repository import ConversationRepository
from matchchat.repositories.message_repository import MessageRepository
from matchchat.repositories.user_repository import UserRepository
from matchchat.services.chat_service import ChatService, ConversationLocks
from matchchat.services.directory import IdentityDirectory
from matchchat.services.viewers import ViewerContext
from matchchat.utils.attachment_store import get_attachment_store
from matchchat.utils.realtime_bus import get_bus
from matchchat.utils.security import decode_access_token


bearer_scheme = HTTPBearer()

# shared by every request so sends into one conversation serialize
conversation_locks = ConversationLocks()


def get_directory(db=Depends(mongo_db_dependency)) -> IdentityDirectory:
    return IdentityDirectory(UserRepository(db))


async def get_chat_service(db=Depends(mongo_db_dependency), directory: IdentityDirectory = Depends(get_directory)) -> ChatService:
    return ChatService(
        ConversationRepository(db),
        MessageRepository(db),
        directory,
        get_attachment_store(),
        await get_bus(),
        conversation_locks,
    )


async def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> dict:
    try:
        payload = decode_access_token(credentials.credentials)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired token")
    sub = payload.get("sub")
    if not sub:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token payload")
    return {"_id": sub}


async def resolve_viewer(user_id: str, directory: IdentityDirectory) -> ViewerContext:
    try:
        profile = await directory.resolve_participant(user_id)
    except NotFound:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unknown user")
    return ViewerContext(role=profile.role, id=user_id)


async def get_viewer(current_user: dict = Depends(get_current_user), directory: IdentityDirectory = Depends(get_directory)) -> ViewerContext:
    return await resolve_viewer(current_user["_id"], directory)
