"""Routes an upload to the server-proxied path when the primary path is unavailable."""
import logging
from typing import Optional

from ..errors import Exhausted, PrimaryPathUnavailable, Unauthenticated, UploadError, ValidationError
from ..models import BucketClass, MediaAsset, UploadResult
from ..protocols import ITransport, ProgressCallback
from ..services.credentials import CredentialManager
from ..services.validator import MediaValidator
from ..utils.events import FALLBACK, EventEmitter
from .retry import RetryCoordinator

logger = logging.getLogger(__name__)


class FallbackRouter:
    """
    Wraps the whole primary retry loop.

    On PrimaryPathUnavailable the operation is re-validated against the
    proxy's own limits and sent once through the fallback transport.
    The fallback is never retried and never routed again.
    """

    def __init__(
        self,
        primary: RetryCoordinator,
        fallback: Optional[ITransport],
        credentials: CredentialManager,
        validator: MediaValidator,
        events: Optional[EventEmitter] = None,
        enabled: bool = True,
    ):
        self._primary = primary
        self._fallback = fallback
        self._credentials = credentials
        self._validator = validator
        self._events = events
        self._enabled = enabled and fallback is not None

    async def run(
        self,
        asset: MediaAsset,
        bucket: BucketClass,
        on_progress: Optional[ProgressCallback] = None,
        name: Optional[str] = None,
    ) -> UploadResult:
        name = name or asset.filename
        try:
            return await self._primary.run(asset, bucket, on_progress, name=name)
        except PrimaryPathUnavailable as e:
            if not self._enabled:
                raise
            logger.warning(f"[fallback] Primary path unavailable for {asset.filename}, using proxy: {e}")
            if self._events is not None:
                await self._events.emit(FALLBACK, name, e)
            return await self._run_fallback(asset, bucket, on_progress, name, primary_attempts=e.attempts)

    async def _run_fallback(
        self,
        asset: MediaAsset,
        bucket: BucketClass,
        on_progress: Optional[ProgressCallback],
        name: str,
        primary_attempts: int = 0,
    ) -> UploadResult:
        try:
            accepted = self._validator.validate(asset, bucket)
            session = await self._credentials.ensure_valid_session()
        except UploadError as e:
            # nothing was sent through the proxy
            e.attempts = primary_attempts
            raise

        try:
            stored = await self._fallback.attempt(accepted, bucket, session.access_token, on_progress)
        except (ValidationError, Unauthenticated) as e:
            e.attempts = primary_attempts + 1
            raise
        except UploadError as e:
            logger.error(f"[fallback] Proxy upload failed for {asset.filename}: {e}")
            raise Exhausted(primary_attempts + 1, e, path="fallback") from e

        return UploadResult.ok(
            filename=name,
            public_url=stored.public_url,
            object_key=stored.object_key,
            attempts=primary_attempts + 1,
            via_fallback=True,
        )
