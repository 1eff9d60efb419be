# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
S3 storage backend.

Uploads use multipart uploads so memory stays bounded by one part,
whatever the size of the archive or dump.
"""

from typing import Any, AsyncIterable, AsyncIterator, Dict, List

import structlog
from aiobotocore.session import get_session

from bkman.exceptions import TransferError
from bkman.storage.base import Artifact, artifact_from_listing

logger = structlog.get_logger()

# S3 requires every part except the last to be at least 5 MiB
DEFAULT_PART_SIZE = 8 * 1024 * 1024
DOWNLOAD_CHUNK_SIZE = 1024 * 1024

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


class S3Storage:
    """Storage gateway over one S3 bucket."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        endpoint_url: str | None = None,
        session: Any = None,
        part_size: int = DEFAULT_PART_SIZE,
    ):
        self.bucket = bucket
        self.region = region
        self.endpoint_url = endpoint_url
        self.session = session or get_session()
        self.part_size = part_size

    def __repr__(self) -> str:
        return f"S3Storage(bucket={self.bucket!r}, region={self.region!r})"

    def _client(self) -> Any:
        """aiobotocore client context manager, created per operation."""
        return self.session.create_client(
            "s3",
            region_name=self.region,
            endpoint_url=self.endpoint_url,
        )

    async def exists(self, path: str) -> bool:
        async with self._client() as s3_client:
            try:
                await s3_client.head_object(Bucket=self.bucket, Key=path)
                return True
            except s3_client.exceptions.ClientError as e:
                code = str(e.response.get("Error", {}).get("Code", ""))
                if code in _MISSING_CODES:
                    return False
                raise

    async def size(self, path: str) -> int:
        async with self._client() as s3_client:
            response = await s3_client.head_object(Bucket=self.bucket, Key=path)
            return int(response["ContentLength"])

    async def delete(self, path: str) -> bool:
        async with self._client() as s3_client:
            await s3_client.delete_object(Bucket=self.bucket, Key=path)
        return True

    async def list(self, prefix: str) -> List[Artifact]:
        """List objects directly under prefix (no recursion into sub-prefixes)."""
        key_prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        artifacts: List[Artifact] = []

        async with self._client() as s3_client:
            paginator = s3_client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(Bucket=self.bucket, Prefix=key_prefix):
                for obj in page.get("Contents", []):
                    name = obj["Key"][len(key_prefix):]
                    if not name or "/" in name:
                        continue
                    artifacts.append(
                        artifact_from_listing(name, obj.get("Size"), obj.get("LastModified"))
                    )

        return artifacts

    async def make_directory(self, path: str) -> None:
        # Prefixes are implicit in S3
        logger.debug("s3_make_directory_noop", bucket=self.bucket, path=path)

    async def read_stream(self, path: str) -> AsyncIterator[bytes]:
        async with self._client() as s3_client:
            try:
                response = await s3_client.get_object(Bucket=self.bucket, Key=path)
            except s3_client.exceptions.ClientError as e:
                raise TransferError(
                    f"Failed to open stream for backup file: {path}",
                    details={"bucket": self.bucket, "key": path, "error": str(e)},
                ) from e

            async with response["Body"] as stream:
                while True:
                    chunk = await stream.read(DOWNLOAD_CHUNK_SIZE)
                    if not chunk:
                        break
                    yield chunk

    async def write_stream(self, path: str, chunks: AsyncIterable[bytes]) -> bool:
        """
        Upload a stream to S3.

        Streams up to part_size bytes are sent with a single put_object;
        larger streams switch to a multipart upload, which is aborted on
        any failure so no orphaned parts remain.
        """
        buffer = bytearray()
        upload_id: str | None = None
        parts: List[Dict[str, Any]] = []
        total = 0

        async with self._client() as s3_client:
            try:
                async for chunk in chunks:
                    buffer.extend(chunk)
                    total += len(chunk)
                    while len(buffer) > self.part_size:
                        if upload_id is None:
                            response = await s3_client.create_multipart_upload(
                                Bucket=self.bucket, Key=path
                            )
                            upload_id = response["UploadId"]
                        body = bytes(buffer[: self.part_size])
                        del buffer[: self.part_size]
                        await self._upload_part(s3_client, path, upload_id, parts, body)

                if upload_id is None:
                    await s3_client.put_object(
                        Bucket=self.bucket, Key=path, Body=bytes(buffer)
                    )
                else:
                    if buffer:
                        await self._upload_part(
                            s3_client, path, upload_id, parts, bytes(buffer)
                        )
                    await s3_client.complete_multipart_upload(
                        Bucket=self.bucket,
                        Key=path,
                        UploadId=upload_id,
                        MultipartUpload={"Parts": parts},
                    )
            except BaseException:
                if upload_id is not None:
                    try:
                        await s3_client.abort_multipart_upload(
                            Bucket=self.bucket, Key=path, UploadId=upload_id
                        )
                    except Exception as abort_error:
                        logger.warning(
                            "s3_multipart_abort_failed",
                            key=path,
                            upload_id=upload_id,
                            error=str(abort_error),
                        )
                raise

        logger.debug(
            "s3_stream_written",
            bucket=self.bucket,
            key=path,
            size=total,
            parts=len(parts),
        )
        return True

    async def _upload_part(
        self,
        s3_client: Any,
        path: str,
        upload_id: str,
        parts: List[Dict[str, Any]],
        body: bytes,
    ) -> None:
        part_number = len(parts) + 1
        response = await s3_client.upload_part(
            Bucket=self.bucket,
            Key=path,
            UploadId=upload_id,
            PartNumber=part_number,
            Body=body,
        )
        parts.append({"ETag": response["ETag"], "PartNumber": part_number})
