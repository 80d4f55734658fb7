import asyncio
import hashlib
import json
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path, PurePosixPath
from urllib.parse import urlencode

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import ClientError

from ledger.constants import PRESIGNED_URL_EXPIRY_SECONDS
from ledger.logging import get_logger

_logger = get_logger(__name__)

STREAM_CHUNK_SIZE = 64 * 1024
_MISSING_CODES = frozenset({"404", "NoSuchKey", "NotFound"})


@dataclass(frozen=True)
class BlobInfo:
    size: int
    content_type: str | None
    etag: str | None


@dataclass(frozen=True)
class PresignedUrl:
    url: str
    expires_at: datetime


def _expiry(expires_in: int) -> datetime:
    return datetime.now(UTC) + timedelta(seconds=expires_in)


class BlobStore(ABC):
    @abstractmethod
    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> BlobInfo: ...

    @abstractmethod
    async def head(self, bucket: str, key: str) -> BlobInfo | None: ...

    @abstractmethod
    async def get_stream(self, bucket: str, key: str) -> AsyncIterator[bytes] | None: ...

    @abstractmethod
    async def presign_upload(
        self, bucket: str, key: str, content_type: str, expires_in: int = PRESIGNED_URL_EXPIRY_SECONDS
    ) -> PresignedUrl: ...

    @abstractmethod
    async def presign_download(
        self, bucket: str, key: str, filename: str | None = None, expires_in: int = PRESIGNED_URL_EXPIRY_SECONDS
    ) -> PresignedUrl: ...


class S3BlobStore(BlobStore):
    """S3-compatible object storage. Works against AWS, MinIO and LocalStack."""

    def __init__(
        self,
        region: str | None = None,
        endpoint_url: str | None = None,
        client=None,
    ):
        if client is None:
            kwargs = {"config": BotoConfig(signature_version="s3v4")}
            if region:
                kwargs["region_name"] = region
            if endpoint_url:
                kwargs["endpoint_url"] = endpoint_url
            client = boto3.client("s3", **kwargs)
        self.client = client

    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> BlobInfo:
        response = await asyncio.to_thread(
            self.client.put_object,
            Bucket=bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )
        _logger.debug("Stored blob", bucket=bucket, key=key, size=len(body))
        return BlobInfo(size=len(body), content_type=content_type, etag=response.get("ETag", "").strip('"') or None)

    async def head(self, bucket: str, key: str) -> BlobInfo | None:
        try:
            response = await asyncio.to_thread(self.client.head_object, Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise
        return BlobInfo(
            size=response["ContentLength"],
            content_type=response.get("ContentType"),
            etag=response.get("ETag", "").strip('"') or None,
        )

    async def get_stream(self, bucket: str, key: str) -> AsyncIterator[bytes] | None:
        try:
            response = await asyncio.to_thread(self.client.get_object, Bucket=bucket, Key=key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_CODES:
                return None
            raise
        return self._iter_body(response["Body"])

    async def _iter_body(self, body) -> AsyncIterator[bytes]:
        try:
            while chunk := await asyncio.to_thread(body.read, STREAM_CHUNK_SIZE):
                yield chunk
        finally:
            body.close()

    async def presign_upload(
        self, bucket: str, key: str, content_type: str, expires_in: int = PRESIGNED_URL_EXPIRY_SECONDS
    ) -> PresignedUrl:
        url = await asyncio.to_thread(
            self.client.generate_presigned_url,
            "put_object",
            Params={"Bucket": bucket, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )
        return PresignedUrl(url=url, expires_at=_expiry(expires_in))

    async def presign_download(
        self, bucket: str, key: str, filename: str | None = None, expires_in: int = PRESIGNED_URL_EXPIRY_SECONDS
    ) -> PresignedUrl:
        params = {"Bucket": bucket, "Key": key}
        if filename:
            params["ResponseContentDisposition"] = f'attachment; filename="{filename}"'
        url = await asyncio.to_thread(
            self.client.generate_presigned_url,
            "get_object",
            Params=params,
            ExpiresIn=expires_in,
        )
        return PresignedUrl(url=url, expires_at=_expiry(expires_in))


class LocalBlobStore(BlobStore):
    """Blob store on the local filesystem, one directory per bucket.

    Content type and etag live in a ``.meta.json`` sidecar next to each blob.
    Presigned URLs are ``file://`` URLs carrying an ``expires`` timestamp; they
    are only meaningful to tools running on the same machine.
    """

    def __init__(self, root: Path):
        self.root = root

    def _path(self, bucket: str, key: str) -> Path:
        parts = PurePosixPath(key).parts
        if not parts or key.startswith("/") or ".." in parts:
            raise ValueError(f"Invalid blob key: {key!r}")
        return self.root / bucket / Path(*parts)

    @staticmethod
    def _meta_path(path: Path) -> Path:
        return path.with_name(path.name + ".meta.json")

    async def put(self, bucket: str, key: str, body: bytes, content_type: str) -> BlobInfo:
        path = self._path(bucket, key)
        info = BlobInfo(size=len(body), content_type=content_type, etag=hashlib.md5(body).hexdigest())
        await asyncio.to_thread(self._write, path, body, info)
        return info

    def _write(self, path: Path, body: bytes, info: BlobInfo) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(body)
        tmp.replace(path)
        self._meta_path(path).write_text(json.dumps({"content_type": info.content_type, "etag": info.etag}))

    async def head(self, bucket: str, key: str) -> BlobInfo | None:
        path = self._path(bucket, key)
        return await asyncio.to_thread(self._read_info, path)

    def _read_info(self, path: Path) -> BlobInfo | None:
        if not path.is_file():
            return None
        meta_path = self._meta_path(path)
        meta = json.loads(meta_path.read_text()) if meta_path.exists() else {}
        return BlobInfo(size=path.stat().st_size, content_type=meta.get("content_type"), etag=meta.get("etag"))

    async def get_stream(self, bucket: str, key: str) -> AsyncIterator[bytes] | None:
        path = self._path(bucket, key)
        if not await asyncio.to_thread(path.is_file):
            return None
        return self._iter_file(path)

    async def _iter_file(self, path: Path) -> AsyncIterator[bytes]:
        f = await asyncio.to_thread(path.open, "rb")
        try:
            while chunk := await asyncio.to_thread(f.read, STREAM_CHUNK_SIZE):
                yield chunk
        finally:
            f.close()

    def _file_url(self, path: Path, expires_at: datetime, **extra: str) -> str:
        query = urlencode({"expires": int(expires_at.timestamp()), **extra})
        return f"{path.resolve().as_uri()}?{query}"

    async def presign_upload(
        self, bucket: str, key: str, content_type: str, expires_in: int = PRESIGNED_URL_EXPIRY_SECONDS
    ) -> PresignedUrl:
        expires_at = _expiry(expires_in)
        url = self._file_url(self._path(bucket, key), expires_at, content_type=content_type)
        return PresignedUrl(url=url, expires_at=expires_at)

    async def presign_download(
        self, bucket: str, key: str, filename: str | None = None, expires_in: int = PRESIGNED_URL_EXPIRY_SECONDS
    ) -> PresignedUrl:
        expires_at = _expiry(expires_in)
        extra = {"filename": filename} if filename else {}
        url = self._file_url(self._path(bucket, key), expires_at, **extra)
        return PresignedUrl(url=url, expires_at=expires_at)
