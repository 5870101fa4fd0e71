"""
S3 File Store

Objects are stored under:
    s3://<BUCKET>/documents/<document_id>/<sanitized filename>

The key is built server-side from the document id; the returned path is
"s3://bucket/key" and is what the Document row stores in file_path.
"""

from __future__ import annotations

import logging
import mimetypes
import re
import uuid
from typing import Optional

import aioboto3
from botocore.exceptions import ClientError

from docflow.storage.base import FileStore

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_filename(filename: str) -> str:
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name or "upload"


class S3FileStore(FileStore):

    def __init__(
        self,
        bucket:                str,
        region:                str = "us-east-1",
        aws_access_key_id:     str = "",
        aws_secret_access_key: str = "",
    ) -> None:
        self._bucket = bucket
        self._region = region
        # Local dev: static keys; prod: empty → default credential chain
        self._session = aioboto3.Session(
            aws_access_key_id=aws_access_key_id or None,
            aws_secret_access_key=aws_secret_access_key or None,
        )

    @classmethod
    def from_settings(cls, settings) -> "S3FileStore":
        return cls(
            bucket=settings.s3_bucket,
            region=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )

    def _client(self):
        """Return a scoped async S3 client context manager."""
        return self._session.client("s3", region_name=self._region)

    def _split(self, path: str) -> tuple[str, str]:
        prefix = "s3://"
        if not path.startswith(prefix):
            raise ValueError(f"not an s3 path: {path!r}")
        bucket, _, key = path[len(prefix):].partition("/")
        return bucket, key

    async def put(
        self,
        document_id:  uuid.UUID,
        filename:     str,
        data:         bytes,
        content_type: Optional[str] = None,
    ) -> str:
        key = f"documents/{document_id}/{sanitize_filename(filename)}"
        ct  = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"

        async with self._client() as s3:
            await s3.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=data,
                ContentType=ct,
                Metadata={"document_id": str(document_id)},
            )

        logger.info("S3 upload ok | doc=%s key=%s size=%d", document_id, key, len(data))
        return f"s3://{self._bucket}/{key}"

    async def get(self, path: str) -> bytes:
        bucket, key = self._split(path)
        async with self._client() as s3:
            try:
                resp = await s3.get_object(Bucket=bucket, Key=key)
                return await resp["Body"].read()
            except ClientError as exc:
                code = exc.response["Error"]["Code"]
                if code in ("NoSuchKey", "404"):
                    raise FileNotFoundError(f"Object not found: {path}") from exc
                raise

    async def delete(self, path: str) -> None:
        bucket, key = self._split(path)
        async with self._client() as s3:
            await s3.delete_object(Bucket=bucket, Key=key)
        logger.info("S3 delete | key=%s", key)
