"""
Models for mediaup.

Immutable dataclasses following Single Responsibility Principle.
RetryState is the one mutable record, owned by a single coordinator run.
"""
import mimetypes
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, FrozenSet, List, Set, Tuple

MB = 1024 * 1024


class MediaKind(Enum):
    """General media family."""
    IMAGE = "image"
    VIDEO = "video"


class BucketClass(Enum):
    """Target classification of an upload."""
    AVATARS = "avatars"
    POSTS = "posts"
    PRODUCTS = "products"
    COVERS = "covers"
    BACKGROUNDS = "backgrounds"
    STORIES = "stories"
    VIDEOS = "videos"

    @classmethod
    def parse(cls, value) -> "BucketClass":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            names = ", ".join(b.value for b in cls)
            raise ValueError(f"Unknown bucket class: {value!r} (expected one of: {names})")


@dataclass(frozen=True)
class BucketPolicy:
    """Size ceilings and allowed media kinds for one BucketClass."""
    kinds: FrozenSet[MediaKind]
    image_max_bytes: int = 5 * MB
    video_max_bytes: int = 100 * MB
    bounds: Tuple[int, int] = (1920, 1080)

    def max_bytes(self, kind: MediaKind) -> int:
        if kind is MediaKind.VIDEO:
            return self.video_max_bytes
        return self.image_max_bytes


_IMAGES = frozenset({MediaKind.IMAGE})
_VIDEOS = frozenset({MediaKind.VIDEO})
_ANY = frozenset({MediaKind.IMAGE, MediaKind.VIDEO})

# Direct-to-storage limits
BUCKET_POLICIES: Dict[BucketClass, BucketPolicy] = {
    BucketClass.AVATARS: BucketPolicy(_IMAGES, bounds=(512, 512)),
    BucketClass.POSTS: BucketPolicy(_ANY),
    BucketClass.PRODUCTS: BucketPolicy(_IMAGES),
    BucketClass.COVERS: BucketPolicy(_IMAGES, image_max_bytes=10 * MB),
    BucketClass.BACKGROUNDS: BucketPolicy(_IMAGES, image_max_bytes=10 * MB),
    BucketClass.STORIES: BucketPolicy(_ANY),
    # Reels; videos bucket also carries the cover thumbnails
    BucketClass.VIDEOS: BucketPolicy(_ANY, video_max_bytes=200 * MB),
}

# Server-proxied path limits (mirrors the proxy's own checks)
PROXY_POLICIES: Dict[BucketClass, BucketPolicy] = {
    BucketClass.AVATARS: BucketPolicy(_ANY, bounds=(512, 512)),
    BucketClass.POSTS: BucketPolicy(_ANY),
    BucketClass.PRODUCTS: BucketPolicy(_ANY),
    BucketClass.COVERS: BucketPolicy(_ANY, image_max_bytes=10 * MB, video_max_bytes=10 * MB),
    BucketClass.BACKGROUNDS: BucketPolicy(_ANY, image_max_bytes=10 * MB, video_max_bytes=10 * MB),
    BucketClass.STORIES: BucketPolicy(_ANY),
    BucketClass.VIDEOS: BucketPolicy(_ANY),
}


@dataclass(frozen=True)
class MediaAsset:
    """Immutable media payload selected by the user."""
    data: bytes = field(repr=False)
    content_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return Path(self.filename).suffix.lower().lstrip(".")

    @property
    def stem(self) -> str:
        return Path(self.filename).stem

    @classmethod
    def from_path(cls, path, content_type: Optional[str] = None) -> "MediaAsset":
        """Read a file into an asset, guessing its MIME from the name."""
        path = Path(path)
        if content_type is None:
            content_type = mimetypes.guess_type(path.name)[0] or ""
        return cls(data=path.read_bytes(), content_type=content_type, filename=path.name)


@dataclass(frozen=True)
class UploadSession:
    """Server-issued single-use write grant for one object."""
    upload_url: str = field(repr=False)
    public_url: str
    object_key: str


@dataclass(frozen=True)
class ProgressEvent:
    """Bytes-sent snapshot for one transfer."""
    bytes_sent: int
    bytes_total: int

    @property
    def percentage(self) -> int:
        if self.bytes_total <= 0:
            return 100
        return round(self.bytes_sent * 100 / self.bytes_total)

    @property
    def done(self) -> bool:
        return self.bytes_sent >= self.bytes_total


@dataclass(frozen=True)
class VideoMetadata:
    """Result of a read-only video probe."""
    duration: float
    width: int
    height: int

    def as_dict(self) -> Dict[str, Any]:
        return {"duration": self.duration, "width": self.width, "height": self.height}


class RetryPhase(Enum):
    """States of one upload operation inside the retry coordinator."""
    IDLE = "idle"
    AUTHORIZING = "authorizing"
    TRANSFERRING = "transferring"
    BACKOFF = "backoff"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


@dataclass
class RetryState:
    """Per-operation retry bookkeeping. Never shared between operations."""
    attempt: int = 0
    phase: RetryPhase = RetryPhase.IDLE
    last_error_kind: Optional[str] = None
    elapsed: float = 0.0
    delays: List[int] = field(default_factory=list)
    consumed_keys: Set[str] = field(default_factory=set)
    forbidden_count: int = 0
    unreachable_count: int = 0

    @property
    def retries(self) -> int:
        return max(self.attempt - 1, 0)


class UploadStatus(Enum):
    """Upload operation status."""
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"  # Video ok but optional thumbnail failed


@dataclass(frozen=True)
class UploadResult:
    """Immutable result of an upload operation."""
    filename: str
    status: UploadStatus = UploadStatus.SUCCESS
    public_url: Optional[str] = None
    object_key: Optional[str] = None
    thumbnail_url: Optional[str] = None
    metadata: Optional[VideoMetadata] = None
    attempts: int = 0
    via_fallback: bool = False
    error_kind: Optional[str] = None
    error: Optional[str] = None
    cause: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @property
    def success(self) -> bool:
        return self.status == UploadStatus.SUCCESS

    @classmethod
    def ok(
        cls,
        filename: str,
        public_url: str,
        object_key: Optional[str] = None,
        attempts: int = 1,
        via_fallback: bool = False,
    ):
        return cls(
            filename=filename,
            status=UploadStatus.SUCCESS,
            public_url=public_url,
            object_key=object_key,
            attempts=attempts,
            via_fallback=via_fallback,
        )

    @classmethod
    def fail(
        cls,
        filename: str,
        error_kind: str,
        error: str,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ):
        return cls(
            filename=filename,
            status=UploadStatus.FAILED,
            error_kind=error_kind,
            error=error,
            attempts=attempts,
            cause=cause,
        )

    @classmethod
    def partial(cls, result: "UploadResult", error: str):
        """Downgrade a successful result whose side artifact failed."""
        return cls(
            filename=result.filename,
            status=UploadStatus.PARTIAL,
            public_url=result.public_url,
            object_key=result.object_key,
            metadata=result.metadata,
            attempts=result.attempts,
            via_fallback=result.via_fallback,
            error_kind="PreprocessingError",
            error=error,
        )


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class UploadConfig:
    """Immutable configuration for upload operations."""
    api_url: str = ""
    api_key: Optional[str] = None
    authorize_path: str = "/functions/v1/generate-upload-url"
    proxy_path: str = "/functions/v1/upload-media"
    token_path: str = "/auth/v1/token"
    # Retry
    max_retries: int = 3
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 5000
    backoff_jitter_ms: int = 0
    # Timeouts (seconds)
    authorize_timeout: float = 15.0
    proxy_timeout: float = 30.0
    transfer_timeout_floor: float = 60.0
    transfer_timeout_step: float = 30.0
    transfer_timeout_step_bytes: int = 10 * MB
    transfer_timeout_cap: float = 300.0
    preprocess_timeout: float = 60.0
    # Credentials
    session_min_validity: int = 60
    session_file: Optional[Path] = None
    # Preprocessing
    compress_images: bool = True
    image_quality: float = 0.85
    thumbnail_seek: float = 1.0
    thumbnail_quality: float = 0.8
    # Routing
    enable_fallback: bool = True
    max_concurrent_uploads: int = 4
    chunk_size: int = 64 * 1024

    def transfer_timeout(self, size: int) -> float:
        """PUT timeout: fixed floor plus a step per size block, capped."""
        steps = size // self.transfer_timeout_step_bytes
        return min(self.transfer_timeout_floor + steps * self.transfer_timeout_step, self.transfer_timeout_cap)

    def backoff_ms(self, retry: int) -> int:
        """Delay before the given retry (1-based), without jitter."""
        return min(self.backoff_base_ms * 2 ** (retry - 1), self.backoff_cap_ms)

    @classmethod
    def from_env(cls, environ=None, **overrides) -> "UploadConfig":
        """Build config from MEDIAUP_* environment variables."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}

        if env.get("MEDIAUP_API_URL"):
            values["api_url"] = env["MEDIAUP_API_URL"].rstrip("/")
        if env.get("MEDIAUP_API_KEY"):
            values["api_key"] = env["MEDIAUP_API_KEY"]
        if env.get("MEDIAUP_SESSION_FILE"):
            values["session_file"] = Path(env["MEDIAUP_SESSION_FILE"]).expanduser()
        if env.get("MEDIAUP_MAX_RETRIES"):
            values["max_retries"] = int(env["MEDIAUP_MAX_RETRIES"])
        if env.get("MEDIAUP_MAX_CONCURRENT"):
            values["max_concurrent_uploads"] = int(env["MEDIAUP_MAX_CONCURRENT"])
        if env.get("MEDIAUP_IMAGE_QUALITY"):
            values["image_quality"] = float(env["MEDIAUP_IMAGE_QUALITY"])
        values["enable_fallback"] = _env_flag(env.get("MEDIAUP_ENABLE_FALLBACK"), True)
        values["compress_images"] = _env_flag(env.get("MEDIAUP_COMPRESS_IMAGES"), True)

        values.update(overrides)
        return cls(**values)
