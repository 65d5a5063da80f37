"""Resource stores: where generated images are persisted and read back.

Two interchangeable backends implement ``ResourceStore``:

- ``FilesystemResourceStore`` keeps files under a root directory and
  addresses them with ``file://`` URIs.
- ``S3ResourceStore`` keeps objects in a bucket and addresses them with
  ``s3://bucket/key`` URIs.

Every operation receives the caller's ``ResourceContext`` so a backend can
apply per-caller rules. The current backends only log it.
"""
from __future__ import annotations

import asyncio
import logging
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Any, List, Optional, Set
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BACKEND_FILESYSTEM, BACKEND_S3, StorageConfig, default_storage_directory
from .errors import ResourceNotFoundError, StorageError
from .images import DEFAULT_MIME_TYPE, is_image_name, mime_type_for
from .models import MetadataRecord, ResourceContext, ResourceContents, StoredResource

logger = logging.getLogger(__name__)

METADATA_SUFFIX = ".txt"
METADATA_MIME_TYPE = "text/plain"


def metadata_name(identifier: str) -> str:
    """Sidecar name for an image: same base name, ``.txt`` extension."""
    return str(PurePosixPath(identifier).with_suffix(METADATA_SUFFIX))


def check_image_identifier(identifier: str, mime_type: str) -> None:
    """Only listable image names may be written, with the type their extension implies.

    Raises:
        StorageError: If the extension is not an image extension or the
            content type disagrees with it.
    """
    expected = mime_type_for(identifier)
    if expected is None:
        raise StorageError(f"Unsupported image file name: {identifier} (expected .png, .jpg, .jpeg or .webp)")
    if mime_type != expected:
        raise StorageError(f"Content type {mime_type} does not match {identifier} ({expected})")


class ResourceStore(ABC):
    """Persist and retrieve named image resources."""

    @abstractmethod
    async def list_resources(self, context: ResourceContext) -> List[StoredResource]:
        """List stored images. Unreadable entries are skipped, never fatal."""

    @abstractmethod
    async def read_resource(self, uri: str, context: ResourceContext) -> ResourceContents:
        """Read a resource by URI.

        Raises:
            ResourceNotFoundError: If the URI does not resolve in this store.
        """

    @abstractmethod
    async def write_resource(
        self,
        identifier: str,
        data: bytes,
        mime_type: str,
        context: Optional[ResourceContext] = None,
    ) -> StoredResource:
        """Store bytes under ``identifier``, overwriting any previous content."""

    @abstractmethod
    async def write_metadata(self, identifier: str, record: MetadataRecord) -> str:
        """Write the JSON sidecar for ``identifier`` and return its URI."""

    @abstractmethod
    async def resource_to_file(self, uri: str, context: ResourceContext) -> Path:
        """Return a local file path holding the resource's bytes.

        Pair every call with ``release_file`` once the path is no longer needed.
        """

    async def release_file(self, path: Path) -> None:
        """Drop a path handed out by ``resource_to_file``."""


class FilesystemResourceStore(ResourceStore):
    """Resources are image files under ``root``."""

    def __init__(self, root: "Path | str") -> None:
        self.root = Path(root).expanduser().resolve()

    def _path_for_identifier(self, identifier: str) -> Path:
        path = (self.root / identifier).resolve()
        if path != self.root and self.root not in path.parents:
            raise StorageError(f"Identifier escapes the storage directory: {identifier}")
        return path

    def _resolve_uri(self, uri: str) -> Path:
        parsed = urlparse(uri)
        if parsed.scheme == "file":
            path = Path(url2pathname(unquote(parsed.path))).resolve()
        elif not parsed.scheme:
            path = (self.root / uri).resolve()
        else:
            raise ResourceNotFoundError(uri, "unsupported URI scheme")
        if self.root not in path.parents:
            raise ResourceNotFoundError(uri, "outside the storage directory")
        if not path.is_file():
            raise ResourceNotFoundError(uri)
        return path

    def _describe(self, path: Path) -> StoredResource:
        return StoredResource(
            uri=path.as_uri(),
            name=path.relative_to(self.root).as_posix(),
            mime_type=mime_type_for(path) or DEFAULT_MIME_TYPE,
        )

    def _scan(self) -> List[StoredResource]:
        if not self.root.exists():
            return []
        found: List[StoredResource] = []
        for path in sorted(self.root.rglob("*")):
            try:
                if not path.is_file() or not is_image_name(path):
                    continue
                found.append(self._describe(path))
            except (OSError, ValueError) as exc:
                logger.warning("Skipping unreadable resource %s: %s", path, exc)
        return found

    async def list_resources(self, context: ResourceContext) -> List[StoredResource]:
        logger.debug("Listing resources in %s for %s", self.root, context.requestor_ip_address)
        return await asyncio.to_thread(self._scan)

    async def read_resource(self, uri: str, context: ResourceContext) -> ResourceContents:
        path = self._resolve_uri(uri)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Failed to read {uri}: {exc}") from exc
        return ResourceContents(
            uri=path.as_uri(),
            mime_type=mime_type_for(path) or DEFAULT_MIME_TYPE,
            data=data,
        )

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    async def write_resource(
        self,
        identifier: str,
        data: bytes,
        mime_type: str,
        context: Optional[ResourceContext] = None,
    ) -> StoredResource:
        if not isinstance(data, (bytes, bytearray)):
            raise TypeError("Expected bytes for resource content.")
        check_image_identifier(identifier, mime_type)
        path = self._path_for_identifier(identifier)
        try:
            await asyncio.to_thread(self._write, path, bytes(data))
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc
        logger.info("Saved %s (%d bytes)", path, len(data))
        return StoredResource(uri=path.as_uri(), name=identifier, mime_type=mime_type)

    async def write_metadata(self, identifier: str, record: MetadataRecord) -> str:
        path = self._path_for_identifier(metadata_name(identifier))
        try:
            await asyncio.to_thread(self._write, path, record.to_json().encode("utf-8"))
        except OSError as exc:
            raise StorageError(f"Failed to write metadata {path}: {exc}") from exc
        return path.as_uri()

    async def resource_to_file(self, uri: str, context: ResourceContext) -> Path:
        return self._resolve_uri(uri)


class S3ResourceStore(ResourceStore):
    """Resources are objects in an S3 (or S3-compatible) bucket."""

    def __init__(self, bucket: str, *, prefix: str = "", client: Any = None, **client_kwargs: Any) -> None:
        self.bucket = bucket
        self.prefix = prefix.strip("/") + "/" if prefix.strip("/") else ""
        self._client = client or boto3.client("s3", **client_kwargs)
        self._downloads: Set[Path] = set()

    def _key_for(self, identifier: str) -> str:
        return f"{self.prefix}{identifier.lstrip('/')}"

    def _uri_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def _key_from_uri(self, uri: str) -> str:
        parsed = urlparse(uri)
        if parsed.scheme == "s3":
            if parsed.netloc != self.bucket:
                raise ResourceNotFoundError(uri, f"not in bucket {self.bucket}")
            return unquote(parsed.path.lstrip("/"))
        if not parsed.scheme:
            return self._key_for(uri)
        raise ResourceNotFoundError(uri, "unsupported URI scheme")

    def _describe(self, key: str) -> StoredResource:
        return StoredResource(
            uri=self._uri_for(key),
            name=key[len(self.prefix):] if key.startswith(self.prefix) else key,
            mime_type=mime_type_for(key) or DEFAULT_MIME_TYPE,
        )

    def _scan(self) -> List[StoredResource]:
        found: List[StoredResource] = []
        token: Optional[str] = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": self.prefix}
            if token:
                params["ContinuationToken"] = token
            try:
                page = self._client.list_objects_v2(**params)
            except (ClientError, BotoCoreError) as exc:
                raise StorageError(f"Failed to list bucket {self.bucket}: {exc}") from exc
            for entry in page.get("Contents", []):
                key = entry.get("Key")
                if not key or not is_image_name(key):
                    continue
                found.append(self._describe(key))
            if not page.get("IsTruncated"):
                return found
            token = page.get("NextContinuationToken")

    async def list_resources(self, context: ResourceContext) -> List[StoredResource]:
        logger.debug("Listing s3://%s/%s for %s", self.bucket, self.prefix, context.requestor_ip_address)
        return await asyncio.to_thread(self._scan)

    def _get(self, uri: str, key: str) -> ResourceContents:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            code = exc.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404", "NotFound"):
                raise ResourceNotFoundError(uri) from exc
            raise StorageError(f"Failed to read {uri}: {exc}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to read {uri}: {exc}") from exc
        body = response["Body"]
        try:
            data = body.read()
        finally:
            body.close()
        return ResourceContents(
            uri=self._uri_for(key),
            mime_type=response.get("ContentType") or mime_type_for(key) or DEFAULT_MIME_TYPE,
            data=data,
        )

    async def read_resource(self, uri: str, context: ResourceContext) -> ResourceContents:
        key = self._key_from_uri(uri)
        return await asyncio.to_thread(self._get, uri, key)

    def _put(self, key: str, data: bytes, mime_type: str) -> None:
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=mime_type)
        except (ClientError, BotoCoreError) as exc:
            raise StorageError(f"Failed to write {self._uri_for(key)}: {exc}") from exc

    async def write_resource(
        self,
        identifier: str,
        data: bytes,
        mime_type: str,
        context: Optional[ResourceContext] = None,
    ) -> StoredResource:
        check_image_identifier(identifier, mime_type)
        key = self._key_for(identifier)
        await asyncio.to_thread(self._put, key, bytes(data), mime_type)
        logger.info("Uploaded %s (%d bytes)", self._uri_for(key), len(data))
        return StoredResource(uri=self._uri_for(key), name=identifier, mime_type=mime_type)

    async def write_metadata(self, identifier: str, record: MetadataRecord) -> str:
        key = self._key_for(metadata_name(identifier))
        await asyncio.to_thread(self._put, key, record.to_json().encode("utf-8"), METADATA_MIME_TYPE)
        return self._uri_for(key)

    async def resource_to_file(self, uri: str, context: ResourceContext) -> Path:
        contents = await self.read_resource(uri, context)
        suffix = PurePosixPath(self._key_from_uri(uri)).suffix
        target = await asyncio.to_thread(_write_temp_file, contents.data, suffix)
        self._downloads.add(target)
        return target

    async def release_file(self, path: Path) -> None:
        if path not in self._downloads:
            return
        self._downloads.discard(path)
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("Could not remove download %s: %s", path, exc)


def _write_temp_file(data: bytes, suffix: str) -> Path:
    """Write bytes to a fresh temporary file that outlives the handle."""
    with tempfile.NamedTemporaryFile(prefix="stability-mcp-", suffix=suffix, delete=False) as handle:
        handle.write(data)
    return Path(handle.name)


def create_resource_store(config: StorageConfig) -> ResourceStore:
    """Build the resource store selected by the configuration."""
    if config.backend == BACKEND_FILESYSTEM:
        return FilesystemResourceStore(config.directory or default_storage_directory())
    if config.backend == BACKEND_S3:
        if not config.bucket:
            raise StorageError("An S3 bucket name is required for the s3 backend.")
        client_kwargs = {
            name: value
            for name, value in (
                ("region_name", config.region),
                ("endpoint_url", config.endpoint_url),
                ("aws_access_key_id", config.access_key_id),
                ("aws_secret_access_key", config.secret_access_key),
            )
            if value
        }
        return S3ResourceStore(config.bucket, prefix=config.prefix, **client_kwargs)
    raise StorageError(f"Unknown storage backend: {config.backend}")
