"""
mediaup - Resilient media upload pipeline.

Images and videos are validated, optionally compressed or thumbnailed, and
written straight to object storage through single-use presigned URLs. When
that path is unreachable the upload is routed once through a server proxy.

Usage:
    from mediaup import UploadOrchestrator, UploadConfig

    config = UploadConfig.from_env()
    async with UploadOrchestrator(config, session_store=store) as uploader:
        # Image, resized to the bucket bounds and re-encoded as JPEG
        result = await uploader.upload_image(photo_path, "posts")

        # Reel: cover thumbnail first, then the video
        result = await uploader.upload_video(video_path, "videos")

        # Several files, bounded concurrency
        results = await uploader.upload_many(paths, "stories")

        if result.success:
            print(result.public_url)
        else:
            print(result.error_kind, result.error)
"""
from .orchestrator import UploadOrchestrator
from .models import (
    BucketClass,
    MediaAsset,
    MediaKind,
    ProgressEvent,
    UploadConfig,
    UploadResult,
    UploadStatus,
    VideoMetadata,
)
from .errors import (
    Exhausted,
    PreprocessingError,
    PrimaryPathUnavailable,
    Unauthenticated,
    UploadError,
    ValidationError,
)
from .services import (
    BearerSession,
    ClientPreprocessor,
    CredentialManager,
    FileSessionStore,
    MediaValidator,
    MemorySessionStore,
)

__version__ = "0.1.0"
__all__ = [
    # Main
    "UploadOrchestrator",
    # Models
    "BucketClass",
    "MediaAsset",
    "MediaKind",
    "ProgressEvent",
    "UploadConfig",
    "UploadResult",
    "UploadStatus",
    "VideoMetadata",
    # Errors
    "UploadError",
    "ValidationError",
    "Unauthenticated",
    "PrimaryPathUnavailable",
    "PreprocessingError",
    "Exhausted",
    # Services
    "BearerSession",
    "ClientPreprocessor",
    "CredentialManager",
    "FileSessionStore",
    "MediaValidator",
    "MemorySessionStore",
]
