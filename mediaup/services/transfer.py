"""
Transfer Service - Single Responsibility: PUT bytes to a presigned URL.

One request per session, whole payload, progress streamed to the caller.
The public URL is already known from the session, so no second round trip.
"""
import asyncio
import logging
from typing import AsyncIterator, Optional

import httpx

from ..errors import TransferForbidden, TransferRejected, TransferTransient
from ..models import MediaAsset, ProgressEvent, UploadConfig, UploadSession
from ..protocols import ITransferEngine, ProgressCallback
from ..utils.events import notify

logger = logging.getLogger(__name__)

# Storage error codes meaning the signed URL went stale, not that access is denied
_STALE_SIGNATURE_MARKERS = ("SignatureDoesNotMatch", "RequestTimeTooSkewed", "Request has expired")
_RETRYABLE_STATUSES = {408, 429}


class TransferEngine(ITransferEngine):
    """
    Streams an asset to storage.

    Usage:
        async with httpx.AsyncClient() as http:
            engine = TransferEngine(http, config)
            url = await engine.transfer(session, asset, on_progress=print)
    """

    def __init__(self, http: httpx.AsyncClient, config: Optional[UploadConfig] = None):
        self._http = http
        self._config = config or UploadConfig()

    def timeout_for(self, size: int) -> float:
        return self._config.transfer_timeout(size)

    async def _body(
        self,
        asset: MediaAsset,
        on_progress: Optional[ProgressCallback],
    ) -> AsyncIterator[bytes]:
        total = asset.size
        chunk_size = self._config.chunk_size
        view = memoryview(asset.data)
        sent = 0
        while sent < total:
            chunk = bytes(view[sent:sent + chunk_size])
            yield chunk
            sent += len(chunk)
            await notify(on_progress, ProgressEvent(bytes_sent=sent, bytes_total=total))

    async def transfer(
        self,
        session: UploadSession,
        asset: MediaAsset,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """
        PUT the asset to ``session.upload_url``.

        Returns:
            session.public_url

        Raises:
            TransferTransient: network error, timeout, stale signature, 5xx
            TransferForbidden: storage denied the write
            TransferRejected: any other client error
        """
        timeout = self.timeout_for(asset.size)
        logger.debug(
            f"[transfer] PUT {session.object_key} ({asset.size} bytes, {asset.content_type}, timeout={timeout:.0f}s)"
        )

        try:
            response = await asyncio.wait_for(
                self._http.put(
                    session.upload_url,
                    content=self._body(asset, on_progress),
                    headers={
                        "Content-Type": asset.content_type,
                        "Content-Length": str(asset.size),
                    },
                    timeout=timeout,
                ),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise TransferTransient(
                "Upload timed out. Please try a smaller file or check your connection."
            ) from e
        except httpx.TransportError as e:
            raise TransferTransient(f"Network error during upload: {e!r}") from e

        if response.is_success:
            logger.info(f"[transfer] Upload successful: {session.public_url}")
            return session.public_url

        self._raise_for_status(response)

    @staticmethod
    def _raise_for_status(response: httpx.Response):
        status = response.status_code
        text = response.text
        logger.error(f"[transfer] Storage rejected upload ({status}): {text[:500]}")

        if any(marker in text for marker in _STALE_SIGNATURE_MARKERS):
            raise TransferTransient(
                "Upload signature error", signature_mismatch=True, status_code=status
            )
        if status == 403 or "AccessDenied" in text:
            raise TransferForbidden("Upload permission denied", status_code=status)
        if status >= 500 or status in _RETRYABLE_STATUSES:
            raise TransferTransient(f"Upload failed: {status}", status_code=status)
        raise TransferRejected(f"Upload failed: {status}", status_code=status)
