from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from matchchat.schemas.chat import ConversationCreated, CreateConversationRequest, Message, ReadReceipt
from matchchat.schemas.views import ConversationListItem, ThreadView
from matchchat.services.attachments import AttachmentUpload
from matchchat.services.chat_service import ChatService
from matchchat.services.presenters import present_conversation_list, present_thread
from matchchat.services.viewers import ViewerContext
from matchchat.utils.dependencies import get_chat_service, get_current_user, get_viewer


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("", response_model=ConversationCreated)
async def start_conversation(body: CreateConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation_id = await service.find_or_create_direct_conversation(current_user["_id"], body.counterpart_id, body.kind)
    return ConversationCreated(conversation_id=conversation_id)


@router.post("/support", response_model=ConversationCreated)
async def contact_support(viewer: ViewerContext = Depends(get_viewer), service: ChatService = Depends(get_chat_service)):
    if viewer.role != "client":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only clients can contact support")
    conversation_id = await service.find_or_create_support_conversation(viewer.id)
    return ConversationCreated(conversation_id=conversation_id)


@router.get("", response_model=List[ConversationListItem])
async def list_conversations(selected: Optional[str] = None, viewer: ViewerContext = Depends(get_viewer), service: ChatService = Depends(get_chat_service)):
    conversations = await service.list_conversations(viewer)
    return present_conversation_list(viewer, conversations, selected_id=selected)


@router.get("/{conversation_id}/messages", response_model=ThreadView)
async def get_thread(conversation_id: str, viewer: ViewerContext = Depends(get_viewer), service: ChatService = Depends(get_chat_service)):
    conversation = await service.get_conversation(conversation_id)
    await service.resolve_actor(conversation, viewer.id)
    messages = await service.get_messages(conversation_id)
    return present_thread(viewer, conversation, messages)


@router.post("/{conversation_id}/messages", response_model=Message, status_code=status.HTTP_201_CREATED)
async def send_message(
    conversation_id: str,
    text: str = Form(""),
    file: Optional[UploadFile] = File(None),
    current_user: dict = Depends(get_current_user),
    service: ChatService = Depends(get_chat_service),
):
    upload = None
    if file is not None:
        upload = AttachmentUpload(filename=file.filename or "", content=await file.read(), content_type=file.content_type)
    return await service.send_message(conversation_id, current_user["_id"], text, upload)


@router.post("/{conversation_id}/read", response_model=ReadReceipt)
async def mark_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    updated = await service.mark_conversation_read(conversation_id, current_user["_id"])
    return ReadReceipt(updated=updated)
