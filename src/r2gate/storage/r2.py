"""Cloudflare R2 (S3-compatible) storage backend for r2gate.

Proxies object operations to an upstream bucket via aiobotocore. All keys
are written as ``{prefix}{key}``; the prefix is stripped again on listing.

Credentials are the operator's own bucket credentials from configuration,
falling back to the standard AWS credential chain when empty.
"""

import hashlib
import logging
from datetime import timezone

from aiobotocore.session import AioSession
from botocore.exceptions import ClientError

from r2gate.storage.backend import StoredObject

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = ("NoSuchKey", "404", "NotFound")


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class R2StorageBackend:
    """Storage backend that proxies to an R2 or S3-compatible bucket.

    Attributes:
        bucket_name: The upstream bucket name.
        region: Region name passed to the client (``auto`` for R2).
        prefix: Key prefix for all objects in the upstream bucket.
        endpoint_url: Account endpoint, e.g. ``https://<id>.r2.cloudflarestorage.com``.
    """

    def __init__(
        self,
        bucket_name: str,
        endpoint_url: str = "",
        region: str = "auto",
        prefix: str = "",
        access_key_id: str = "",
        secret_access_key: str = "",
    ) -> None:
        self.bucket_name = bucket_name
        self.endpoint_url = endpoint_url
        self.region = region
        self.prefix = prefix
        self.access_key_id = access_key_id
        self.secret_access_key = secret_access_key
        self._session = AioSession()
        self._client = None
        self._client_ctx = None

    def _s3_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    async def init(self) -> None:
        """Create the aiobotocore client and verify the upstream bucket exists.

        Raises:
            ValueError: If the upstream bucket does not exist or is inaccessible.
        """
        client_kwargs: dict = {"region_name": self.region}
        if self.endpoint_url:
            client_kwargs["endpoint_url"] = self.endpoint_url

        if self.access_key_id and self.secret_access_key:
            session = AioSession()
            session.set_credentials(self.access_key_id, self.secret_access_key)
            self._session = session
        self._client_ctx = self._session.create_client("s3", **client_kwargs)
        self._client = await self._client_ctx.__aenter__()

        try:
            await self._client.head_bucket(Bucket=self.bucket_name)
        except ClientError as e:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None
            raise ValueError(
                f"Cannot access upstream bucket '{self.bucket_name}': {_error_code(e)}"
            ) from e

        logger.info(
            "R2 storage backend initialized: bucket=%s endpoint=%s prefix='%s'",
            self.bucket_name,
            self.endpoint_url,
            self.prefix,
        )

    async def close(self) -> None:
        """Close the aiobotocore client session."""
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None

    async def put(
        self, key: str, data: bytes, content_type: str = "application/octet-stream"
    ) -> StoredObject:
        """Upload an object. The ETag is computed locally as hex MD5."""
        md5 = hashlib.md5(data).hexdigest()
        await self._client.put_object(
            Bucket=self.bucket_name,
            Key=self._s3_key(key),
            Body=data,
            ContentType=content_type,
        )
        return StoredObject(key=key, size=len(data), etag=md5, content_type=content_type)

    async def get(self, key: str) -> bytes | None:
        try:
            resp = await self._client.get_object(Bucket=self.bucket_name, Key=self._s3_key(key))
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise

        async with resp["Body"] as stream:
            return await stream.read()

    async def head(self, key: str) -> StoredObject | None:
        try:
            resp = await self._client.head_object(Bucket=self.bucket_name, Key=self._s3_key(key))
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return None
            raise

        modified = resp.get("LastModified")
        return StoredObject(
            key=key,
            size=resp.get("ContentLength", 0),
            etag=resp.get("ETag", "").strip('"'),
            content_type=resp.get("ContentType", "application/octet-stream"),
            last_modified=(
                modified.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
                if modified
                else ""
            ),
        )

    async def delete(self, key: str) -> None:
        """Delete an object. ``delete_object`` does not error on missing keys."""
        await self._client.delete_object(Bucket=self.bucket_name, Key=self._s3_key(key))

    async def list(self, prefix: str) -> list[StoredObject]:
        results: list[StoredObject] = []
        paginator = self._client.get_paginator("list_objects_v2")
        async for page in paginator.paginate(
            Bucket=self.bucket_name, Prefix=self._s3_key(prefix)
        ):
            for item in page.get("Contents", []):
                modified = item.get("LastModified")
                results.append(
                    StoredObject(
                        key=item["Key"][len(self.prefix) :],
                        size=item.get("Size", 0),
                        etag=item.get("ETag", "").strip('"'),
                        last_modified=(
                            modified.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")
                            if modified
                            else ""
                        ),
                    )
                )
        return sorted(results, key=lambda o: o.key)
