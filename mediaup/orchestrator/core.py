"""Core orchestrator - wires the upload pipeline and exposes the caller API."""
import asyncio
import logging
from typing import Awaitable, Callable, Iterable, List, Optional, Union

import httpx

from ..models import (
    PROXY_POLICIES,
    BucketClass,
    MediaAsset,
    MediaKind,
    UploadConfig,
    UploadResult,
    VideoMetadata,
)
from ..protocols import ISessionStore, ITokenRefresher, ProgressCallback
from ..services.api_client import HTTPAPIClient
from ..services.authorizer import UploadAuthorizer
from ..services.credentials import (
    CredentialManager,
    FileSessionStore,
    HTTPTokenRefresher,
    MemorySessionStore,
)
from ..services.preprocessor import ClientPreprocessor
from ..services.transfer import TransferEngine
from ..services.transports import PresignedTransport, ProxyTransport
from ..services.validator import MediaValidator
from ..utils.events import EventEmitter
from .fallback import FallbackRouter
from .retry import RetryCoordinator
from .workflows import Source, UploadWorkflow, load_source, source_name

logger = logging.getLogger(__name__)


class UploadOrchestrator:
    """
    Orchestrates media uploads using injected services.

    Usage:
        config = UploadConfig.from_env()
        async with UploadOrchestrator(config, session_store=store) as uploader:
            result = await uploader.upload("photo.png", "posts")

        # Reel: thumbnail first, then the video
        result = await uploader.upload_video("clip.mp4", thumbnail=True)
    """

    def __init__(
        self,
        config: Optional[UploadConfig] = None,
        session_store: Optional[ISessionStore] = None,
        refresher: Optional[ITokenRefresher] = None,
        credentials: Optional[CredentialManager] = None,
        api_transport: Optional[httpx.AsyncBaseTransport] = None,
        storage_transport: Optional[httpx.AsyncBaseTransport] = None,
        preprocessor: Optional[ClientPreprocessor] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
    ):
        """
        Initialize orchestrator with dependencies.

        Args:
            config: Upload configuration
            session_store: Where the bearer session lives (default: file or memory per config)
            refresher: Token refresher (default: HTTP refresh against the auth service)
            credentials: Pre-built CredentialManager, overrides store/refresher
            api_transport: httpx transport for the authorization/proxy API
            storage_transport: httpx transport for presigned PUTs
            preprocessor: ClientPreprocessor
            sleep: Backoff sleep
        """
        self._config = config or UploadConfig()
        self._session_store = session_store
        self._refresher = refresher
        self._credentials = credentials
        self._api_transport = api_transport
        self._storage_transport = storage_transport
        self._preprocessor = preprocessor or ClientPreprocessor(self._config)
        self._sleep = sleep
        self.events = EventEmitter()

        # Initialized in __aenter__
        self._api_client: Optional[HTTPAPIClient] = None
        self._storage_http: Optional[httpx.AsyncClient] = None
        self._router: Optional[FallbackRouter] = None
        self._workflow: Optional[UploadWorkflow] = None

    @property
    def credentials(self) -> Optional[CredentialManager]:
        return self._credentials

    def _build_credentials(self) -> CredentialManager:
        store = self._session_store
        if store is None:
            if self._config.session_file:
                store = FileSessionStore(self._config.session_file)
            else:
                store = MemorySessionStore()
        refresher = self._refresher or HTTPTokenRefresher(
            self._api_client, self._config.token_path, timeout=self._config.authorize_timeout
        )
        return CredentialManager(store, refresher, min_validity=self._config.session_min_validity)

    async def __aenter__(self):
        """Initialize services and handlers."""
        config = self._config

        self._api_client = HTTPAPIClient(
            config.api_url,
            api_key=config.api_key,
            timeout=config.proxy_timeout,
            transport=self._api_transport,
        )
        await self._api_client.__aenter__()
        # No base_url: presigned URLs are absolute
        self._storage_http = httpx.AsyncClient(transport=self._storage_transport)

        if self._credentials is None:
            self._credentials = self._build_credentials()

        authorizer = UploadAuthorizer(
            self._api_client, config.authorize_path, timeout=config.authorize_timeout
        )
        engine = TransferEngine(self._storage_http, config)
        coordinator = RetryCoordinator(
            self._credentials,
            PresignedTransport(authorizer, engine),
            config,
            events=self.events,
            sleep=self._sleep,
        )
        proxy = ProxyTransport(self._api_client, config.proxy_path, timeout=config.proxy_timeout)
        self._router = FallbackRouter(
            coordinator,
            proxy,
            self._credentials,
            MediaValidator(PROXY_POLICIES, strict_mime=True),
            events=self.events,
            enabled=config.enable_fallback,
        )
        self._workflow = UploadWorkflow(
            MediaValidator(),
            self._preprocessor,
            self._router,
            config,
            events=self.events,
        )
        return self

    async def __aexit__(self, *args):
        """Cleanup resources."""
        if self._storage_http:
            await self._storage_http.aclose()
            self._storage_http = None
        if self._api_client:
            await self._api_client.__aexit__(*args)
            self._api_client = None

    def on(self, event_name: str, callback: Callable):
        """Subscribe to ``progress``, ``state``, ``retry`` or ``fallback`` events."""
        self.events.on(event_name, callback)
        return self

    async def upload(
        self,
        source: Source,
        bucket: Union[str, BucketClass],
        progress_callback: Optional[ProgressCallback] = None,
        compress: Optional[bool] = None,
    ) -> UploadResult:
        """Auto-detect type and upload."""
        assert self._workflow is not None
        return await self._workflow.run(source, bucket, progress_callback, compress=compress)

    async def upload_image(
        self,
        source: Source,
        bucket: Union[str, BucketClass] = BucketClass.POSTS,
        progress_callback: Optional[ProgressCallback] = None,
        compress: Optional[bool] = None,
    ) -> UploadResult:
        """Upload an image, compressed to the bucket's bounds unless disabled."""
        assert self._workflow is not None
        return await self._workflow.run(
            source, bucket, progress_callback, expected=MediaKind.IMAGE, compress=compress
        )

    async def upload_video(
        self,
        source: Source,
        bucket: Union[str, BucketClass] = BucketClass.VIDEOS,
        progress_callback: Optional[ProgressCallback] = None,
        thumbnail: bool = True,
        thumbnail_required: bool = False,
    ) -> UploadResult:
        """Upload a video; with ``thumbnail`` its cover frame is uploaded first."""
        assert self._workflow is not None
        return await self._workflow.run(
            source,
            bucket,
            progress_callback,
            expected=MediaKind.VIDEO,
            thumbnail=thumbnail,
            thumbnail_required=thumbnail_required,
        )

    async def upload_many(
        self,
        sources: Iterable[Source],
        bucket: Union[str, BucketClass],
        compress: Optional[bool] = None,
        thumbnail: bool = False,
        thumbnail_required: bool = False,
    ) -> List[UploadResult]:
        """
        Upload independent assets concurrently. Results keep the input order.

        Thumbnail options only apply to the videos in ``sources``.
        """
        assert self._workflow is not None
        semaphore = asyncio.Semaphore(max(1, self._config.max_concurrent_uploads))

        async def _one(source: Source) -> UploadResult:
            async with semaphore:
                return await self._workflow.run(
                    source,
                    bucket,
                    compress=compress,
                    thumbnail=thumbnail,
                    thumbnail_required=thumbnail_required,
                )

        sources = list(sources)
        outcomes = await asyncio.gather(*(_one(s) for s in sources), return_exceptions=True)

        results: List[UploadResult] = []
        for source, outcome in zip(sources, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                filename = source_name(source)
                logger.error(f"[upload_many] {filename}: unexpected {type(outcome).__name__}: {outcome}")
                outcome = UploadResult.fail(filename, type(outcome).__name__, str(outcome), cause=outcome)
            results.append(outcome)
        return results

    async def probe(self, source: Source) -> VideoMetadata:
        """Read video duration and dimensions."""
        return await self._preprocessor.probe_video(await load_source(source))

    async def thumbnail(self, source: Source) -> MediaAsset:
        """Generate the JPEG cover frame without uploading it."""
        return await self._preprocessor.generate_thumbnail(await load_source(source))
