"""
Compliance Case Hub - Blob Store

Stores approval documents outside the database. The workflow only keeps a
reference (url + object id) to each stored file.

Contract:
- upload(content, ...) -> UploadResult(success, url, object_id | error)
- delete(object_id)    -> DeleteResult(success, error)

Neither call raises for provider failures; callers branch on `success`.
Upload failures abort an approval, delete failures are only logged.

Providers:
- CLOUDINARY: signed REST calls against the Cloudinary upload API
- MEMORY: in-process store for development and tests
"""

import asyncio
import hashlib
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from services import workflow_config

logger = logging.getLogger(__name__)


class BlobStoreProvider(str, Enum):
    CLOUDINARY = "cloudinary"
    MEMORY = "memory"


@dataclass
class UploadResult:
    success: bool
    url: Optional[str] = None
    object_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeleteResult:
    success: bool
    error: Optional[str] = None


class BlobStore(ABC):
    """Opaque document storage used by the approval workflows."""

    @abstractmethod
    async def upload(
        self,
        content: bytes,
        *,
        file_name: str,
        mime_type: str,
        folder: str,
        max_size_bytes: Optional[int] = None,
        timeout_seconds: Optional[float] = None
    ) -> UploadResult:
        ...

    @abstractmethod
    async def delete(self, object_id: str) -> DeleteResult:
        ...


# =============================================================================
# CLOUDINARY PROVIDER
# =============================================================================

def sign_params(params: Dict[str, Any], api_secret: str) -> str:
    """
    Cloudinary request signature: SHA-1 of the alphabetically sorted
    `key=value` pairs joined with '&', followed by the API secret.
    """
    to_sign = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] not in (None, ""))
    return hashlib.sha1(f"{to_sign}{api_secret}".encode("utf-8")).hexdigest()


class CloudinaryBlobStore(BlobStore):
    """
    Cloudinary-backed blob store.

    Object ids have the form "<resource_type>/<public_id>" because Cloudinary
    needs the resource type to destroy an asset and `auto` uploads decide it
    per file (PDFs and images are "image", Office files are "raw").

    Usage:
        store = CloudinaryBlobStore()
        result = await store.upload(data, file_name="kyc.pdf",
                                    mime_type="application/pdf",
                                    folder="kyc-documents/<job>/lmro")
    """

    def __init__(
        self,
        cloud_name: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.cloud_name = cloud_name or workflow_config.CLOUDINARY_CLOUD_NAME
        self.api_key = api_key or workflow_config.CLOUDINARY_API_KEY
        self.api_secret = api_secret or workflow_config.CLOUDINARY_API_SECRET
        self.api_base = (api_base or workflow_config.CLOUDINARY_API_BASE).rstrip("/")
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def _client(self, timeout_seconds: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout_seconds, transport=self._transport)

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return response.json().get("error", {}).get("message") or response.text
        except ValueError:
            return response.text

    def _signed(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = dict(params, timestamp=int(time.time()))
        params["signature"] = sign_params(params, self.api_secret)
        params["api_key"] = self.api_key
        return params

    async def upload(
        self,
        content: bytes,
        *,
        file_name: str,
        mime_type: str,
        folder: str,
        max_size_bytes: Optional[int] = None,
        timeout_seconds: Optional[float] = None
    ) -> UploadResult:
        if not self.is_configured():
            return UploadResult(success=False, error="Cloudinary credentials are not configured")
        if max_size_bytes is not None and len(content) > max_size_bytes:
            return UploadResult(success=False, error=f"File exceeds {max_size_bytes} bytes")

        timeout = timeout_seconds or workflow_config.UPLOAD_TIMEOUT_SECONDS
        url = f"{self.api_base}/{self.cloud_name}/auto/upload"
        data = self._signed({"folder": folder})

        logger.info("Uploading %s to Cloudinary folder %s", file_name, folder)
        try:
            async with self._client(timeout) as client:
                response = await asyncio.wait_for(
                    client.post(url, data=data, files={"file": (file_name, content, mime_type)}),
                    timeout=timeout,
                )
            if response.status_code != 200:
                error = self._error_message(response)
                logger.error("Cloudinary upload failed (%s): %s", response.status_code, error)
                return UploadResult(success=False, error=f"Cloudinary upload failed: {error}")

            try:
                body = response.json()
                public_id = body["public_id"]
                secure_url = body["secure_url"]
                resource_type = body.get("resource_type", "image")
            except (ValueError, KeyError, TypeError) as e:
                logger.error("Unexpected Cloudinary upload response for %s: %s", file_name, e)
                return UploadResult(success=False, error=f"Unexpected Cloudinary upload response: {e!r}")

            logger.info("Upload successful: %s", secure_url)
            return UploadResult(success=True, url=secure_url, object_id=f"{resource_type}/{public_id}")

        except asyncio.TimeoutError:
            logger.error("Cloudinary upload timed out after %ss: %s", timeout, file_name)
            return UploadResult(success=False, error=f"Upload timed out after {timeout} seconds")
        except httpx.HTTPError as e:
            logger.error("Cloudinary upload error for %s: %s", file_name, e)
            return UploadResult(success=False, error=str(e))

    async def delete(self, object_id: str) -> DeleteResult:
        if not object_id:
            return DeleteResult(success=False, error="Object id is required")
        resource_type, _, public_id = object_id.partition("/")
        if not public_id:
            resource_type, public_id = "image", object_id

        url = f"{self.api_base}/{self.cloud_name}/{resource_type}/destroy"
        data = self._signed({"public_id": public_id})
        try:
            async with self._client(workflow_config.UPLOAD_TIMEOUT_SECONDS) as client:
                response = await client.post(url, data=data)
            result = response.json().get("result") if response.status_code == 200 else None
            if result == "ok":
                return DeleteResult(success=True)
            return DeleteResult(success=False, error=f"Cloudinary destroy returned {result or response.status_code}")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Error deleting from Cloudinary (%s): %s", object_id, e)
            return DeleteResult(success=False, error=str(e))


# =============================================================================
# IN-MEMORY PROVIDER
# =============================================================================

class InMemoryBlobStore(BlobStore):
    """
    Dict-backed blob store for development and testing.

    `fail_uploads` / `fail_deletes` force the corresponding calls to report
    failure; `upload_delay` makes uploads slow enough to hit a timeout.
    """

    def __init__(self, base_url: str = "memory://blobs"):
        self.base_url = base_url.rstrip("/")
        self.objects: Dict[str, Dict[str, Any]] = {}
        self.deleted: list = []
        self.fail_uploads = False
        self.fail_deletes = False
        self.upload_delay = 0.0

    async def upload(
        self,
        content: bytes,
        *,
        file_name: str,
        mime_type: str,
        folder: str,
        max_size_bytes: Optional[int] = None,
        timeout_seconds: Optional[float] = None
    ) -> UploadResult:
        if self.fail_uploads:
            return UploadResult(success=False, error="Blob store unavailable")
        if max_size_bytes is not None and len(content) > max_size_bytes:
            return UploadResult(success=False, error=f"File exceeds {max_size_bytes} bytes")
        if self.upload_delay:
            try:
                await asyncio.wait_for(asyncio.sleep(self.upload_delay), timeout=timeout_seconds)
            except asyncio.TimeoutError:
                return UploadResult(success=False, error=f"Upload timed out after {timeout_seconds} seconds")

        object_id = f"{folder}/{uuid.uuid4().hex[:12]}"
        self.objects[object_id] = {
            "content": content,
            "file_name": file_name,
            "mime_type": mime_type,
        }
        return UploadResult(success=True, url=f"{self.base_url}/{object_id}", object_id=object_id)

    async def delete(self, object_id: str) -> DeleteResult:
        if self.fail_deletes:
            return DeleteResult(success=False, error="Blob store unavailable")
        if self.objects.pop(object_id, None) is None:
            return DeleteResult(success=False, error=f"Object {object_id} not found")
        self.deleted.append(object_id)
        return DeleteResult(success=True)


def create_blob_store(provider: Optional[str] = None) -> BlobStore:
    """Build the configured blob store."""
    provider_type = BlobStoreProvider(provider or workflow_config.BLOB_STORE_PROVIDER)
    if provider_type == BlobStoreProvider.MEMORY:
        logger.warning("Using in-memory blob store; documents are not persisted")
        return InMemoryBlobStore()
    return CloudinaryBlobStore()
