import logging
from pathlib import Path
from typing import Optional, Protocol

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from fastapi.concurrency import run_in_threadpool

from matchchat.core.exceptions import UploadFailed
from matchchat.core.settings import settings


logger = logging.getLogger(__name__)


class AttachmentStore(Protocol):

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        """Store the bytes under ``path`` and return a retrievable address."""


class S3AttachmentStore:

    def __init__(
        self,
        bucket: str,
        public_url: str,
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
    ) -> None:
        session = boto3.session.Session()
        self._client = session.client(
            service_name="s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(signature_version="s3v4"),
        )
        self._bucket = bucket
        self._public_url = public_url.rstrip("/")

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        try:
            # boto3 is blocking
            await run_in_threadpool(
                self._client.put_object,
                Bucket=self._bucket,
                Key=path,
                Body=content,
                ContentType=content_type,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Upload of '{path}' to bucket '{self._bucket}' failed: {e}")
            raise UploadFailed(f"Could not store attachment: {e}") from e
        return f"{self._public_url}/{path}"


class LocalAttachmentStore:
    """Writes attachments below a directory served at ``{base_url}/media``."""

    def __init__(self, root: str, base_url: str) -> None:
        self._root = Path(root)
        self._base_url = base_url.rstrip("/")

    def _write(self, target: Path, content: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(content)

    async def upload(self, path: str, content: bytes, content_type: str) -> str:
        target = self._root / path
        try:
            await run_in_threadpool(self._write, target, content)
        except OSError as e:
            logger.error(f"Writing attachment to '{target}' failed: {e}")
            raise UploadFailed(f"Could not store attachment: {e}") from e
        return f"{self._base_url}/media/{path}"


_store: Optional[AttachmentStore] = None


def get_attachment_store() -> AttachmentStore:
    global _store
    if _store is not None:
        return _store
    if settings.ATTACHMENT_BACKEND == "s3":
        _store = S3AttachmentStore(
            bucket=settings.S3_BUCKET,
            public_url=settings.S3_PUBLIC_URL or f"{settings.S3_ENDPOINT}/{settings.S3_BUCKET}",
            endpoint_url=settings.S3_ENDPOINT,
            access_key_id=settings.S3_ACCESS_KEY_ID,
            secret_access_key=settings.S3_SECRET_ACCESS_KEY,
        )
    else:
        _store = LocalAttachmentStore(settings.LOCAL_MEDIA_DIR, settings.PUBLIC_BASE_URL)
    logger.info(f"Attachment store: {settings.ATTACHMENT_BACKEND}")
    return _store
