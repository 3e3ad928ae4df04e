"""
Validator Service - Single Responsibility: enforce type/size policy.

Runs before any network call. The MIME type decides the media kind; a
missing or generic MIME falls back to the file extension as a hint.
"""
import logging
from dataclasses import replace
from typing import Dict, Optional

from ..errors import ValidationError
from ..models import (
    BUCKET_POLICIES,
    MB,
    BucketClass,
    BucketPolicy,
    MediaAsset,
    MediaKind,
)

logger = logging.getLogger(__name__)

IMAGE_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/heic",
    "image/heif",
    "image/heic-sequence",
    "image/heif-sequence",
})

VIDEO_TYPES = frozenset({
    "video/mp4",
    "video/quicktime",
    "video/webm",
    "video/x-msvideo",
    "video/avi",
    "video/mov",
})

# extension -> canonical MIME
IMAGE_EXTENSIONS = {
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "gif": "image/gif",
    "heic": "image/heic",
    "heif": "image/heif",
}

VIDEO_EXTENSIONS = {
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "webm": "video/webm",
    "avi": "video/x-msvideo",
}


def kind_from_mime(content_type: Optional[str]) -> Optional[MediaKind]:
    mime = (content_type or "").strip().lower()
    if mime in IMAGE_TYPES:
        return MediaKind.IMAGE
    if mime in VIDEO_TYPES or mime.startswith("video/"):
        return MediaKind.VIDEO
    return None


def kind_from_extension(filename: str) -> Optional[MediaKind]:
    ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if ext in IMAGE_EXTENSIONS:
        return MediaKind.IMAGE
    if ext in VIDEO_EXTENSIONS:
        return MediaKind.VIDEO
    return None


def _format_mb(value: int) -> str:
    mb = value / MB
    return f"{mb:g}"


class MediaValidator:
    """
    Accepts or rejects a MediaAsset for a BucketClass.

    ``strict_mime`` disables the extension hint; the proxy path uses it
    because the proxy trusts only the declared MIME.
    """

    def __init__(
        self,
        policies: Optional[Dict[BucketClass, BucketPolicy]] = None,
        strict_mime: bool = False,
    ):
        self._policies = policies or BUCKET_POLICIES
        self._strict_mime = strict_mime

    def policy_for(self, bucket: BucketClass) -> BucketPolicy:
        try:
            return self._policies[bucket]
        except KeyError:
            raise ValidationError(f"Bucket {bucket.value!r} is not accepted on this path")

    def detect_kind(self, asset: MediaAsset) -> MediaKind:
        """Classify the asset or raise ValidationError."""
        kind = kind_from_mime(asset.content_type)
        if kind is not None:
            return kind

        if not self._strict_mime:
            kind = kind_from_extension(asset.filename)
            if kind is not None:
                return kind

        raise ValidationError(
            "Invalid file type. Please upload an image (JPEG, PNG, WebP, GIF, HEIC) or video "
            f"(got {asset.content_type or 'no type'} for {asset.filename!r})"
        )

    def validate(self, asset: MediaAsset, bucket: BucketClass) -> MediaAsset:
        """
        Validate asset against the bucket policy.

        Returns:
            The accepted asset. When the MIME was resolved from the
            extension, a copy carrying the canonical MIME.

        Raises:
            ValidationError: on any policy violation
        """
        policy = self.policy_for(bucket)
        kind = self.detect_kind(asset)

        if kind not in policy.kinds:
            raise ValidationError(
                f"{kind.value.capitalize()} files are not accepted for {bucket.value}"
            )

        if asset.size <= 0:
            raise ValidationError(f"File is empty: {asset.filename!r}")

        limit = policy.max_bytes(kind)
        if asset.size > limit:
            raise ValidationError(
                f"File too large. Maximum size is {_format_mb(limit)}MB", limit=limit
            )

        if kind_from_mime(asset.content_type) is None:
            # extension was only a hint; pin the MIME the storage will see
            ext = asset.extension
            resolved = IMAGE_EXTENSIONS.get(ext) or VIDEO_EXTENSIONS.get(ext)
            logger.debug(
                f"[validator] {asset.filename}: declared type {asset.content_type!r} "
                f"resolved to {resolved} from extension"
            )
            asset = replace(asset, content_type=resolved)

        return asset

    def limit_for(self, bucket: BucketClass, kind: MediaKind) -> int:
        return self.policy_for(bucket).max_bytes(kind)
