"""End-to-end tests for UploadOrchestrator against mocked HTTP collaborators."""
import io
import itertools
import json
from unittest.mock import AsyncMock, Mock

import httpx
import pytest
from PIL import Image

from mediaup import UploadOrchestrator
from mediaup.errors import PreprocessingError
from mediaup.models import MB, MediaAsset, UploadConfig, UploadStatus, VideoMetadata
from mediaup.services.credentials import BearerSession, MemorySessionStore
from mediaup.services.preprocessor import PreparedMedia

AUTHORIZE_PATH = "/functions/v1/generate-upload-url"
PROXY_PATH = "/functions/v1/upload-media"


class FakeBackend:
    """Authorization API, upload proxy and object storage in one place."""

    def __init__(self, unreachable: bool = False):
        self.unreachable = unreachable
        self.api_requests = []
        self.storage_requests = []
        self._counter = itertools.count(1)

    @property
    def authorize_requests(self):
        return [r for r in self.api_requests if r.url.path == AUTHORIZE_PATH]

    @property
    def proxy_requests(self):
        return [r for r in self.api_requests if r.url.path == PROXY_PATH]

    def api(self, request: httpx.Request) -> httpx.Response:
        self.api_requests.append(request)
        if request.url.path == AUTHORIZE_PATH:
            if self.unreachable:
                raise httpx.ConnectError("Connection refused", request=request)
            body = json.loads(request.content)
            key = f"{body['bucket']}/{next(self._counter)}-{body['fileName']}"
            return httpx.Response(
                200,
                json={
                    "uploadUrl": f"https://storage.test/{key}?X-Amz-Signature=sig",
                    "publicUrl": f"https://cdn.test/{key}",
                    "fileKey": key,
                },
            )
        if request.url.path == PROXY_PATH:
            return httpx.Response(200, json={"url": "https://cdn.test/posts/proxied.png"})
        return httpx.Response(404)

    def storage(self, request: httpx.Request) -> httpx.Response:
        self.storage_requests.append(request)
        return httpx.Response(200)


def _orchestrator(backend, session=BearerSession("tok"), preprocessor=None, **config):
    return UploadOrchestrator(
        UploadConfig(api_url="https://api.test", api_key="anon", **config),
        session_store=MemorySessionStore(session),
        api_transport=httpx.MockTransport(backend.api),
        storage_transport=httpx.MockTransport(backend.storage),
        preprocessor=preprocessor,
        sleep=AsyncMock(),
    )


def _png(size=(64, 32)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, (10, 120, 200)).save(buf, format="PNG")
    return buf.getvalue()


def _video(name="clip.mp4") -> MediaAsset:
    return MediaAsset(data=b"\x00" * 4096, content_type="video/mp4", filename=name)


def _video_preprocessor(with_thumbnail=True, error=None):
    async def prepare(asset, bucket, kind, **kwargs):
        if error is not None:
            raise error
        if not with_thumbnail:
            return PreparedMedia(asset=asset, warnings=("ffmpeg not found on PATH",))
        cover = MediaAsset(data=_png(), content_type="image/jpeg", filename=f"{asset.stem}_thumb.jpg")
        return PreparedMedia(
            asset=asset,
            thumbnail=cover,
            metadata=VideoMetadata(duration=12.0, width=1280, height=720),
        )

    preprocessor = Mock()
    preprocessor.prepare = AsyncMock(side_effect=prepare)
    return preprocessor


class TestImageUploads:
    @pytest.mark.asyncio
    async def test_image_compressed_and_uploaded(self):
        backend = FakeBackend()
        asset = MediaAsset(data=_png((3000, 1500)), content_type="image/png", filename="photo.png")

        async with _orchestrator(backend) as uploader:
            result = await uploader.upload_image(asset, "posts")

        assert result.status == UploadStatus.SUCCESS
        assert result.attempts == 1
        assert result.via_fallback is False
        assert result.public_url == "https://cdn.test/posts/1-photo.jpg"

        authorize = backend.authorize_requests[0]
        assert authorize.headers["Authorization"] == "Bearer tok"
        assert authorize.headers["apikey"] == "anon"
        assert json.loads(authorize.content)["fileType"] == "image/jpeg"

        put = backend.storage_requests[0]
        assert put.method == "PUT"
        assert put.headers["Content-Type"] == "image/jpeg"
        with Image.open(io.BytesIO(put.content)) as img:
            assert img.size == (1920, 960)

    @pytest.mark.asyncio
    async def test_image_over_pixel_limit_uploaded_as_is(self, monkeypatch):
        monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 100)
        backend = FakeBackend()
        data = _png()

        async with _orchestrator(backend) as uploader:
            result = await uploader.upload(MediaAsset(data, "image/png", "huge.png"), "posts")

        assert result.status == UploadStatus.SUCCESS
        assert backend.storage_requests[0].headers["Content-Type"] == "image/png"
        assert backend.storage_requests[0].content == data

    @pytest.mark.asyncio
    async def test_upload_from_path_without_compression(self, tmp_path):
        path = tmp_path / "banner.png"
        path.write_bytes(_png())
        backend = FakeBackend()

        async with _orchestrator(backend) as uploader:
            result = await uploader.upload(path, "covers", compress=False)

        assert result.success is True
        assert result.public_url == "https://cdn.test/covers/1-banner.png"
        assert backend.storage_requests[0].headers["Content-Type"] == "image/png"
        assert backend.storage_requests[0].content == path.read_bytes()

    @pytest.mark.asyncio
    async def test_oversize_rejected_without_network(self):
        backend = FakeBackend()
        big = MediaAsset(data=b"\x00" * (6 * MB), content_type="image/jpeg", filename="big.jpg")

        async with _orchestrator(backend) as uploader:
            result = await uploader.upload(big, "posts")

        assert result.status == UploadStatus.FAILED
        assert result.error_kind == "ValidationError"
        assert "Maximum size is 5MB" in result.error
        assert backend.api_requests == []
        assert backend.storage_requests == []

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        async with _orchestrator(FakeBackend()) as uploader:
            result = await uploader.upload(tmp_path / "nope.jpg", "posts")

        assert result.error_kind == "ValidationError"
        assert "File not found" in result.error

    @pytest.mark.asyncio
    async def test_unknown_bucket(self):
        asset = MediaAsset(data=_png(), content_type="image/png", filename="a.png")
        async with _orchestrator(FakeBackend()) as uploader:
            result = await uploader.upload(asset, "documents")

        assert result.error_kind == "ValidationError"

    @pytest.mark.asyncio
    async def test_upload_image_rejects_video(self):
        async with _orchestrator(FakeBackend()) as uploader:
            result = await uploader.upload_image(_video(), "posts")

        assert result.error_kind == "ValidationError"

    @pytest.mark.asyncio
    async def test_not_authenticated(self):
        backend = FakeBackend()
        asset = MediaAsset(data=_png(), content_type="image/png", filename="a.png")

        async with _orchestrator(backend, session=None) as uploader:
            result = await uploader.upload(asset, "posts", compress=False)

        assert result.status == UploadStatus.FAILED
        assert result.error_kind == "Unauthenticated"
        assert backend.api_requests == []

    @pytest.mark.asyncio
    async def test_progress_events(self):
        backend = FakeBackend()
        asset = MediaAsset(data=_png(), content_type="image/png", filename="a.png")
        emitted = []
        direct = []

        async with _orchestrator(backend) as uploader:
            uploader.on("progress", lambda filename, event: emitted.append((filename, event)))
            await uploader.upload(asset, "posts", progress_callback=direct.append, compress=False)

        assert direct[-1].bytes_sent == asset.size
        assert emitted[-1][0] == "a.png"
        assert emitted[-1][1].done is True


class TestFallback:
    @pytest.mark.asyncio
    async def test_connection_refused_routes_to_proxy(self):
        backend = FakeBackend(unreachable=True)
        asset = MediaAsset(data=_png(), content_type="image/png", filename="a.png")
        fallbacks = []

        async with _orchestrator(backend) as uploader:
            uploader.on("fallback", lambda filename, error: fallbacks.append(filename))
            result = await uploader.upload(asset, "posts", compress=False)

        assert result.status == UploadStatus.SUCCESS
        assert result.via_fallback is True
        assert result.public_url == "https://cdn.test/posts/proxied.png"
        assert len(backend.authorize_requests) <= 4
        assert len(backend.proxy_requests) == 1
        assert backend.storage_requests == []
        assert fallbacks == ["a.png"]

        proxy = backend.proxy_requests[0]
        assert proxy.headers["Authorization"] == "Bearer tok"
        assert proxy.headers["Content-Type"].startswith("multipart/form-data")
        assert b'name="bucket"' in proxy.content
        assert b'filename="a.png"' in proxy.content

    @pytest.mark.asyncio
    async def test_fallback_disabled(self):
        backend = FakeBackend(unreachable=True)
        asset = MediaAsset(data=_png(), content_type="image/png", filename="a.png")

        async with _orchestrator(backend, enable_fallback=False) as uploader:
            result = await uploader.upload(asset, "posts", compress=False)

        assert result.status == UploadStatus.FAILED
        assert result.error_kind == "PrimaryPathUnavailable"
        assert result.attempts == 4
        assert backend.proxy_requests == []


class TestVideoUploads:
    @pytest.mark.asyncio
    async def test_thumbnail_uploaded_before_video(self):
        backend = FakeBackend()

        async with _orchestrator(backend, preprocessor=_video_preprocessor()) as uploader:
            result = await uploader.upload_video(_video(), "videos")

        assert result.status == UploadStatus.SUCCESS
        assert result.thumbnail_url == "https://cdn.test/videos/1-clip_thumb.jpg"
        assert result.public_url == "https://cdn.test/videos/2-clip.mp4"
        assert result.metadata == VideoMetadata(duration=12.0, width=1280, height=720)
        assert [r.headers["Content-Type"] for r in backend.storage_requests] == ["image/jpeg", "video/mp4"]

    @pytest.mark.asyncio
    async def test_missing_thumbnail_is_partial(self):
        backend = FakeBackend()

        async with _orchestrator(backend, preprocessor=_video_preprocessor(with_thumbnail=False)) as uploader:
            result = await uploader.upload_video(_video(), "videos")

        assert result.status == UploadStatus.PARTIAL
        assert result.public_url == "https://cdn.test/videos/1-clip.mp4"
        assert result.error == "ffmpeg not found on PATH"

    @pytest.mark.asyncio
    async def test_required_thumbnail_failure_fails(self):
        backend = FakeBackend()
        preprocessor = _video_preprocessor(error=PreprocessingError("ffmpeg not found on PATH"))

        async with _orchestrator(backend, preprocessor=preprocessor) as uploader:
            result = await uploader.upload_video(_video(), "videos", thumbnail_required=True)

        assert result.status == UploadStatus.FAILED
        assert result.error_kind == "PreprocessingError"
        assert backend.storage_requests == []

    @pytest.mark.asyncio
    async def test_no_thumbnail_requested(self):
        backend = FakeBackend()
        preprocessor = _video_preprocessor(with_thumbnail=False)

        async with _orchestrator(backend, preprocessor=preprocessor) as uploader:
            result = await uploader.upload_video(_video(), "stories", thumbnail=False)

        assert result.status == UploadStatus.SUCCESS
        assert result.thumbnail_url is None


class TestUploadMany:
    @pytest.mark.asyncio
    async def test_results_keep_input_order(self):
        backend = FakeBackend()
        assets = [
            MediaAsset(data=_png(), content_type="image/png", filename=f"img{i}.png") for i in range(3)
        ]
        too_big = MediaAsset(data=b"\x00" * (6 * MB), content_type="image/png", filename="huge.png")

        async with _orchestrator(backend, max_concurrent_uploads=2) as uploader:
            results = await uploader.upload_many(assets + [too_big], "posts", compress=False)

        assert [r.filename for r in results] == ["img0.png", "img1.png", "img2.png", "huge.png"]
        assert [r.status for r in results] == [UploadStatus.SUCCESS] * 3 + [UploadStatus.FAILED]
        assert len({r.public_url for r in results[:3]}) == 3
        assert len(backend.storage_requests) == 3

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_only_its_slot(self):
        backend = FakeBackend()

        async def prepare(asset, bucket, kind, **kwargs):
            if asset.filename == "broken.png":
                raise RuntimeError("decoder crashed")
            return PreparedMedia(asset=asset)

        preprocessor = Mock()
        preprocessor.prepare = AsyncMock(side_effect=prepare)
        assets = [
            MediaAsset(data=_png(), content_type="image/png", filename=name)
            for name in ("first.png", "broken.png", "last.png")
        ]

        async with _orchestrator(backend, preprocessor=preprocessor) as uploader:
            results = await uploader.upload_many(assets, "posts")

        assert [r.filename for r in results] == ["first.png", "broken.png", "last.png"]
        assert [r.status for r in results] == [UploadStatus.SUCCESS, UploadStatus.FAILED, UploadStatus.SUCCESS]
        assert results[1].error_kind == "RuntimeError"
        assert results[1].error == "decoder crashed"
        assert len(backend.storage_requests) == 2

    @pytest.mark.asyncio
    async def test_results_and_progress_named_by_source(self):
        backend = FakeBackend()
        assets = [
            MediaAsset(data=_png(), content_type="image/png", filename="a.png"),
            MediaAsset(data=_png(), content_type="image/jpeg", filename="a.jpg"),
        ]
        progress = []

        async with _orchestrator(backend) as uploader:
            uploader.on("progress", lambda filename, event: progress.append(filename))
            results = await uploader.upload_many(assets, "posts")

        assert [r.filename for r in results] == ["a.png", "a.jpg"]
        assert all(r.success for r in results)
        assert set(progress) == {"a.png", "a.jpg"}
