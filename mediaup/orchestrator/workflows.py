"""Single upload workflows: validate, preprocess, route, assemble the result."""
import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional, Union

from ..errors import PreprocessingError, UploadError, ValidationError
from ..models import (
    BucketClass,
    MediaAsset,
    MediaKind,
    ProgressEvent,
    UploadConfig,
    UploadResult,
)
from ..protocols import ProgressCallback
from ..services.preprocessor import ClientPreprocessor
from ..services.validator import MediaValidator
from ..utils.events import PROGRESS, EventEmitter, notify
from .fallback import FallbackRouter

logger = logging.getLogger(__name__)

Source = Union[str, Path, MediaAsset]


def source_name(source: Source) -> str:
    """Name results and progress by what the caller passed in."""
    return source.filename if isinstance(source, MediaAsset) else Path(source).name


async def load_source(source: Source) -> MediaAsset:
    """Accept a MediaAsset as-is or read a file from disk."""
    if isinstance(source, MediaAsset):
        return source
    path = Path(source).expanduser()
    if not path.is_file():
        raise ValidationError(f"File not found: {path}")
    return await asyncio.to_thread(MediaAsset.from_path, path)


class UploadWorkflow:
    """Handles one upload (image, video or auto-detected)."""

    def __init__(
        self,
        validator: MediaValidator,
        preprocessor: ClientPreprocessor,
        router: FallbackRouter,
        config: UploadConfig,
        events: Optional[EventEmitter] = None,
    ):
        """
        Initialize upload workflow.

        Args:
            validator: MediaValidator for the primary path
            preprocessor: ClientPreprocessor
            router: FallbackRouter wrapping the retry coordinator
            config: UploadConfig
            events: EventEmitter receiving progress events
        """
        self._validator = validator
        self._preprocessor = preprocessor
        self._router = router
        self._config = config
        self._events = events

    def _progress(self, filename: str, callback: Optional[ProgressCallback]) -> ProgressCallback:
        async def on_progress(event: ProgressEvent):
            await notify(callback, event)
            if self._events is not None:
                await self._events.emit(PROGRESS, filename, event)
        return on_progress

    async def run(
        self,
        source: Source,
        bucket: Union[str, BucketClass],
        progress_callback: Optional[ProgressCallback] = None,
        expected: Optional[MediaKind] = None,
        compress: Optional[bool] = None,
        thumbnail: bool = False,
        thumbnail_required: bool = False,
    ) -> UploadResult:
        """
        Upload one asset. Classified failures come back as a FAILED result.

        Cancellation of the calling task is propagated.
        """
        filename = source_name(source)
        try:
            return await self._run(
                source, filename, bucket, progress_callback, expected, compress, thumbnail, thumbnail_required
            )
        except UploadError as e:
            logger.error(f"[workflow] {filename}: {e.kind}: {e}")
            return UploadResult.fail(
                filename,
                e.kind,
                str(e),
                attempts=e.attempts,
                cause=getattr(e, "cause", None) or e,
            )

    async def _run(
        self,
        source: Source,
        filename: str,
        bucket: Union[str, BucketClass],
        progress_callback: Optional[ProgressCallback],
        expected: Optional[MediaKind],
        compress: Optional[bool],
        thumbnail: bool,
        thumbnail_required: bool,
    ) -> UploadResult:
        # 1. Load and validate before any network traffic
        asset = await load_source(source)
        try:
            bucket = BucketClass.parse(bucket)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        asset = self._validator.validate(asset, bucket)
        kind = self._validator.detect_kind(asset)
        if expected is not None and kind is not expected:
            raise ValidationError(f"Expected {expected.value} file, got {asset.content_type}")

        # 2. Local transforms
        compress = self._config.compress_images if compress is None else compress
        prepared = await self._preprocessor.prepare(
            asset,
            bucket,
            kind,
            compress=compress,
            thumbnail=thumbnail,
            thumbnail_required=thumbnail_required,
        )
        if prepared.asset is not asset:
            asset = self._validator.validate(prepared.asset, bucket)

        # 3. Thumbnail first, so the cover exists once the video is visible
        thumbnail_url = None
        warnings = list(prepared.warnings)
        if prepared.thumbnail is not None:
            try:
                cover = self._validator.validate(prepared.thumbnail, bucket)
                cover_result = await self._router.run(cover, bucket)
                thumbnail_url = cover_result.public_url
            except UploadError as e:
                if thumbnail_required:
                    raise PreprocessingError(f"Thumbnail upload failed: {e}") from e
                logger.warning(f"[workflow] Thumbnail upload failed for {asset.filename}: {e}")
                warnings.append(str(e))

        # 4. Main asset
        result = await self._router.run(
            asset, bucket, self._progress(filename, progress_callback), name=filename
        )
        result = replace(result, thumbnail_url=thumbnail_url, metadata=prepared.metadata)

        if (thumbnail or thumbnail_required) and kind is MediaKind.VIDEO and thumbnail_url is None:
            return UploadResult.partial(result, "; ".join(warnings) or "Thumbnail unavailable")

        logger.info(f"[workflow] Uploaded {asset.filename} -> {result.public_url}")
        return result
