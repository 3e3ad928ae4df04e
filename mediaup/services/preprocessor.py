"""
Preprocessor Service - Single Responsibility: local transforms before upload.

Images: fit-within-bounds resize and JPEG re-encode (Pillow).
Videos: read-only probe (ffprobe) and a single-frame JPEG cover (ffmpeg + Pillow).

Never mutates the caller's asset; every transform returns a new MediaAsset
or the original unchanged. Blocking work runs off the event loop.
"""
import asyncio
import io
import json
import logging
import os
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from ..errors import PreprocessingError
from ..models import (
    BUCKET_POLICIES,
    BucketClass,
    MediaAsset,
    MediaKind,
    UploadConfig,
    VideoMetadata,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PreparedMedia:
    """Output of the preprocessing stage."""
    asset: MediaAsset
    thumbnail: Optional[MediaAsset] = None
    metadata: Optional[VideoMetadata] = None
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def fit_within(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """Largest size not exceeding the box that keeps the aspect ratio. Never upscales."""
    if width <= 0 or height <= 0:
        raise ValueError(f"Invalid image size: {width}x{height}")
    scale = min(1.0, max_width / width, max_height / height)
    return max(1, round(width * scale)), max(1, round(height * scale))


def thumbnail_timestamp(duration: float, preferred: float = 1.0) -> float:
    """Seek position for a cover frame: ``min(preferred, 10% of duration)``."""
    return min(preferred, max(duration, 0.0) * 0.1)


def _jpeg_quality(quality: float) -> int:
    """Map a 0-1 quality factor to Pillow's 1-95 scale."""
    return max(1, min(95, int(round(quality * 100))))


def _flatten(img: Image.Image) -> Image.Image:
    """JPEG has no alpha: composite transparent images onto white."""
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img


def _encode_jpeg(img: Image.Image, quality: float) -> bytes:
    buf = io.BytesIO()
    _flatten(img).save(buf, format="JPEG", quality=_jpeg_quality(quality), optimize=True)
    return buf.getvalue()


def _compress_sync(data: bytes, max_width: int, max_height: int, quality: float) -> Optional[bytes]:
    with Image.open(io.BytesIO(data)) as img:
        if getattr(img, "is_animated", False):
            return None
        img = ImageOps.exif_transpose(img)
        size = fit_within(img.width, img.height, max_width, max_height)
        if size != img.size:
            img = img.resize(size, Image.Resampling.LANCZOS)
        return _encode_jpeg(img, quality)


def _frame_to_jpeg(frame: bytes, quality: float) -> bytes:
    with Image.open(io.BytesIO(frame)) as img:
        img.load()
        return _encode_jpeg(img, quality)


class ClientPreprocessor:
    """
    Optional local transforms applied before transfer.

    Usage:
        pre = ClientPreprocessor(config)
        smaller = await pre.compress_image(asset, 1920, 1080)
        meta = await pre.probe_video(video)
        cover = await pre.generate_thumbnail(video)
    """

    def __init__(
        self,
        config: Optional[UploadConfig] = None,
        ffmpeg: str = "ffmpeg",
        ffprobe: str = "ffprobe",
    ):
        self._config = config or UploadConfig()
        self._ffmpeg = ffmpeg
        self._ffprobe = ffprobe

    # ------------------------------------------------------------
    # Image
    # ------------------------------------------------------------

    async def compress_image(
        self,
        asset: MediaAsset,
        max_width: int = 1920,
        max_height: int = 1080,
        quality: Optional[float] = None,
    ) -> MediaAsset:
        """
        Resize to fit the box and re-encode as JPEG.

        Returns the original asset when it cannot be decoded, is animated
        or exceeds Pillow's pixel limit.
        """
        quality = self._config.image_quality if quality is None else quality
        try:
            encoded = await asyncio.to_thread(_compress_sync, asset.data, max_width, max_height, quality)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            logger.warning(f"[preprocess] Cannot decode {asset.filename}, uploading as-is: {e}")
            return asset

        if encoded is None:
            logger.debug(f"[preprocess] {asset.filename} is animated, skipping re-encode")
            return asset

        logger.debug(f"[preprocess] {asset.filename}: {asset.size} -> {len(encoded)} bytes")
        return MediaAsset(data=encoded, content_type="image/jpeg", filename=f"{asset.stem}.jpg")

    # ------------------------------------------------------------
    # Video
    # ------------------------------------------------------------

    async def probe_video(self, asset: MediaAsset) -> VideoMetadata:
        """Read duration and dimensions without touching the payload."""
        async with self._spilled(asset) as path:
            out = await self._run([
                self._ffprobe,
                "-v", "error",
                "-select_streams", "v:0",
                "-show_entries", "stream=width,height,duration:format=duration",
                "-of", "json",
                str(path),
            ])
        return self._parse_probe(out, asset.filename)

    @staticmethod
    def _parse_probe(out: bytes, filename: str) -> VideoMetadata:
        try:
            info = json.loads(out.decode("utf-8", errors="replace") or "{}")
            streams = info.get("streams") or []
            if not streams:
                raise PreprocessingError(f"No video stream in {filename}")
            stream = streams[0]
            duration = (info.get("format") or {}).get("duration") or stream.get("duration")
            return VideoMetadata(
                duration=float(duration),
                width=int(stream["width"]),
                height=int(stream["height"]),
            )
        except PreprocessingError:
            raise
        except (ValueError, KeyError, TypeError) as e:
            raise PreprocessingError(f"Failed to load video metadata for {filename}: {e!r}") from e

    async def generate_thumbnail(
        self,
        asset: MediaAsset,
        duration: Optional[float] = None,
        seek: Optional[float] = None,
        quality: Optional[float] = None,
    ) -> MediaAsset:
        """Grab one early frame as a JPEG cover image."""
        seek = self._config.thumbnail_seek if seek is None else seek
        quality = self._config.thumbnail_quality if quality is None else quality
        if duration is None:
            duration = (await self.probe_video(asset)).duration
        timestamp = thumbnail_timestamp(duration, seek)

        async with self._spilled(asset) as path:
            frame = await self._run([
                self._ffmpeg,
                "-loglevel", "error",
                "-ss", f"{timestamp:.3f}",
                "-i", str(path),
                "-frames:v", "1",
                "-f", "image2pipe",
                "-vcodec", "png",
                "-",
            ])

        if not frame:
            raise PreprocessingError(f"Could not generate thumbnail for {asset.filename}")
        try:
            jpeg = await asyncio.to_thread(_frame_to_jpeg, frame, quality)
        except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as e:
            raise PreprocessingError(f"Could not generate thumbnail for {asset.filename}: {e}") from e

        logger.debug(f"[preprocess] Thumbnail for {asset.filename} at {timestamp:.3f}s ({len(jpeg)} bytes)")
        return MediaAsset(data=jpeg, content_type="image/jpeg", filename=f"{asset.stem}_thumb.jpg")

    # ------------------------------------------------------------
    # Workflow
    # ------------------------------------------------------------

    async def prepare(
        self,
        asset: MediaAsset,
        bucket: BucketClass,
        kind: MediaKind,
        compress: bool = True,
        thumbnail: bool = False,
        thumbnail_required: bool = False,
    ) -> PreparedMedia:
        """
        Run the transforms a workflow asked for.

        Video failures degrade to "no thumbnail" unless ``thumbnail_required``.
        """
        if kind is MediaKind.IMAGE:
            if compress and asset.content_type != "image/gif":
                max_width, max_height = BUCKET_POLICIES[bucket].bounds
                asset = await self.compress_image(asset, max_width, max_height)
            return PreparedMedia(asset=asset)

        if not (thumbnail or thumbnail_required):
            return PreparedMedia(asset=asset)

        warnings: List[str] = []
        metadata = None
        cover = None
        try:
            metadata = await self.probe_video(asset)
            cover = await self.generate_thumbnail(asset, duration=metadata.duration)
        except PreprocessingError as e:
            if thumbnail_required:
                raise
            logger.warning(f"[preprocess] Continuing without thumbnail for {asset.filename}: {e}")
            warnings.append(str(e))

        return PreparedMedia(asset=asset, thumbnail=cover, metadata=metadata, warnings=tuple(warnings))

    # ------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------

    @asynccontextmanager
    async def _spilled(self, asset: MediaAsset):
        """ffmpeg needs a seekable file; write the payload to a temp file."""
        suffix = Path(asset.filename).suffix or ".bin"

        def _write() -> Path:
            fd, name = tempfile.mkstemp(prefix="mediaup_", suffix=suffix)
            with os.fdopen(fd, "wb") as f:
                f.write(asset.data)
            return Path(name)

        path = await asyncio.to_thread(_write)
        try:
            yield path
        finally:
            path.unlink(missing_ok=True)

    async def _run(self, cmd: Sequence[str]) -> bytes:
        if shutil.which(cmd[0]) is None:
            raise PreprocessingError(f"{cmd[0]} not found on PATH")

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                proc.communicate(), timeout=self._config.preprocess_timeout
            )
        except asyncio.TimeoutError as e:
            raise PreprocessingError(f"{Path(cmd[0]).name} timed out") from e
        finally:
            # timeout or cancellation: don't leave ffmpeg running
            if proc.returncode is None:
                proc.kill()
                await proc.wait()

        if proc.returncode != 0:
            message = stderr.decode(errors="ignore").strip()
            raise PreprocessingError(f"{Path(cmd[0]).name} failed ({proc.returncode}): {message}")
        return stdout
