"""
Transports - the two ways an asset reaches storage.

PresignedTransport: authorize a single-use session, then PUT directly.
ProxyTransport: hand the raw bytes to a server that places the object.
"""
import logging
import secrets
from typing import Optional

import httpx

from ..errors import (
    AuthorizationDenied,
    TransferTransient,
    TransferRejected,
    ValidationError,
)
from ..models import BucketClass, MediaAsset, ProgressEvent, UploadSession
from ..protocols import IAPIClient, ITransport, ITransferEngine, IUploadAuthorizer, ProgressCallback
from ..utils.events import notify
from .api_client import error_detail

logger = logging.getLogger(__name__)


class PresignedTransport:
    """Primary path: authorize a single-use session, then PUT to it."""

    def __init__(self, authorizer: IUploadAuthorizer, engine: ITransferEngine):
        self._authorizer = authorizer
        self._engine = engine

    async def authorize(self, asset: MediaAsset, bucket: BucketClass, token: str) -> UploadSession:
        return await self._authorizer.authorize(
            bucket, asset.filename, asset.content_type, asset.size, token
        )

    async def transfer(
        self,
        session: UploadSession,
        asset: MediaAsset,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadSession:
        await self._engine.transfer(session, asset, on_progress)
        return session


class ProxyTransport(ITransport):
    """Fallback path: multipart POST to the server-side upload proxy."""

    def __init__(
        self,
        api_client: IAPIClient,
        endpoint: str = "/functions/v1/upload-media",
        timeout: float = 30,
    ):
        self._api = api_client
        self._endpoint = endpoint
        self._timeout = timeout

    async def attempt(
        self,
        asset: MediaAsset,
        bucket: BucketClass,
        token: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadSession:
        """
        Upload through the proxy.

        Raises:
            AuthorizationDenied: 401/403
            ValidationError: proxy rejected the file (400/413/415)
            TransferTransient: network error, timeout, 5xx
            TransferRejected: other client errors or an unusable body
        """
        await notify(on_progress, ProgressEvent(bytes_sent=0, bytes_total=asset.size))

        try:
            response = await self._api.post(
                self._endpoint,
                token=token,
                timeout=self._timeout,
                files={"file": (asset.filename, asset.data, asset.content_type)},
                data={"bucket": bucket.value},
            )
        except httpx.TimeoutException as e:
            raise TransferTransient("Proxy upload timed out") from e
        except httpx.TransportError as e:
            raise TransferTransient(f"Network error during proxy upload: {e!r}") from e

        status = response.status_code
        if status >= 400:
            detail = error_detail(response)
            logger.error(f"[proxy] Upload failed ({status}): {detail}")
            if status in (401, 403):
                raise AuthorizationDenied(f"Proxy rejected credentials ({status})", status_code=status)
            if status in (400, 413, 415, 422):
                raise ValidationError(f"Upload rejected by server: {detail}")
            if status >= 500 or status in (408, 429):
                raise TransferTransient(f"Proxy upload failed: {status}", status_code=status)
            raise TransferRejected(f"Proxy upload failed: {status}", status_code=status)

        try:
            body = response.json()
            public_url = body["url"]
        except (ValueError, KeyError, TypeError) as e:
            raise TransferRejected(f"Proxy returned no URL: {e!r}") from e

        await notify(on_progress, ProgressEvent(bytes_sent=asset.size, bytes_total=asset.size))
        object_key = body.get("key") or body.get("fileKey") or httpx.URL(public_url).path.lstrip("/")
        logger.info(f"[proxy] Upload successful: {public_url}")
        return UploadSession(
            upload_url="",
            public_url=public_url,
            object_key=object_key or f"proxy-{secrets.token_hex(4)}",
        )
