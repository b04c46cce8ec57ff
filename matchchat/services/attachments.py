import logging
import mimetypes
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from matchchat.core.exceptions import InvalidArgument
from matchchat.models.message import AttachmentKind
from matchchat.schemas.chat import Attachment
from matchchat.utils.attachment_store import AttachmentStore


logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "gif"})

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass
class AttachmentUpload:
    filename: str
    content: bytes
    content_type: Optional[str] = None


def file_extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def classify_attachment(filename: str) -> AttachmentKind:
    ext = file_extension(filename)
    if ext in IMAGE_EXTENSIONS:
        return "image"
    if ext == "pdf":
        return "pdf"
    return "other"


def safe_filename(filename: str) -> str:
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or "file"


def attachment_path(conversation_id: str, filename: str, at: datetime) -> str:
    return f"chats/{conversation_id}/{int(at.timestamp() * 1000)}_{safe_filename(filename)}"


def preview_text(text: str, attachment: Optional[Attachment], max_length: int) -> str:
    if attachment is None:
        preview = text
    else:
        label = "Image" if attachment.kind == "image" else "File"
        preview = f"[{label}] {text or attachment.original_name}"
    return preview[:max_length]


async def store_attachment(
    store: AttachmentStore,
    conversation_id: str,
    upload: AttachmentUpload,
    at: datetime,
    max_bytes: int,
) -> Attachment:
    """Upload an attachment ahead of the message that will reference it.

    Raises InvalidArgument for unnamed or oversized files; UploadFailed from
    the store propagates untouched so the send is aborted before anything is
    written.
    """
    if not upload.filename:
        raise InvalidArgument("Attachment needs a file name")
    if len(upload.content) > max_bytes:
        max_mb = max_bytes / (1024 * 1024)
        raise InvalidArgument(f"File is too large. Maximum size is {max_mb:.1f}MB")

    path = attachment_path(conversation_id, upload.filename, at)
    content_type = upload.content_type or mimetypes.guess_type(upload.filename)[0] or "application/octet-stream"
    address = await store.upload(path, upload.content, content_type)
    logger.info(f"Stored attachment for conversation {conversation_id} at {path}")
    return Attachment(address=address, kind=classify_attachment(upload.filename), original_name=upload.filename)
