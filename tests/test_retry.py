"""Tests for RetryCoordinator."""
from unittest.mock import AsyncMock, Mock, call

import pytest

from mediaup.errors import (
    AuthorizationDenied,
    AuthorizationTransient,
    Exhausted,
    PrimaryPathUnavailable,
    TransferForbidden,
    TransferRejected,
    TransferTransient,
    Unauthenticated,
)
from mediaup.models import BucketClass, MediaAsset, RetryPhase, RetryState, UploadConfig, UploadSession
from mediaup.orchestrator.retry import RetryCoordinator
from mediaup.services.credentials import BearerSession, CredentialManager, MemorySessionStore
from mediaup.utils.events import RETRY, STATE, EventEmitter

ASSET = MediaAsset(data=b"\xff\xd8" + b"\x00" * 64, content_type="image/jpeg", filename="photo.jpg")


def _sessions(n: int):
    return [
        UploadSession(f"https://storage.test/k{i}?sig={i}", f"https://cdn.test/k{i}.jpg", f"posts/k{i}.jpg")
        for i in range(1, n + 1)
    ]


def _transport(authorize=None, transfer=None):
    transport = Mock()
    transport.authorize = AsyncMock(side_effect=authorize if authorize is not None else _sessions(8))
    transport.transfer = AsyncMock(side_effect=transfer)
    return transport


def _credentials(session=BearerSession("tok"), refresher=None):
    return CredentialManager(MemorySessionStore(session), refresher)


def _coordinator(transport, credentials=None, events=None, config=None):
    sleep = AsyncMock()
    coordinator = RetryCoordinator(
        credentials or _credentials(),
        transport,
        config or UploadConfig(),
        events=events,
        sleep=sleep,
    )
    return coordinator, sleep


class TestRetryCoordinator:
    @pytest.mark.asyncio
    async def test_first_attempt_succeeds(self):
        transport = _transport(transfer=[None])
        coordinator, sleep = _coordinator(transport)

        result = await coordinator.run(ASSET, BucketClass.POSTS)

        assert result.success is True
        assert result.attempts == 1
        assert result.public_url == "https://cdn.test/k1.jpg"
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_succeeds_on_last_attempt_with_backoff(self):
        transient = [TransferTransient("reset"), TransferTransient("reset"), TransferTransient("reset"), None]
        transport = _transport(transfer=transient)
        coordinator, sleep = _coordinator(transport)
        state = RetryState()

        result = await coordinator.run(ASSET, BucketClass.POSTS, state=state)

        assert result.success is True
        assert result.attempts == 4
        assert result.public_url == "https://cdn.test/k4.jpg"
        assert state.delays == [1000, 2000, 4000]
        assert sleep.await_args_list == [call(1.0), call(2.0), call(4.0)]
        # fresh session every attempt
        assert transport.authorize.await_count == 4
        assert len(state.consumed_keys) == 4

    @pytest.mark.asyncio
    async def test_exhausted_after_budget(self):
        transport = _transport(transfer=[TransferTransient(f"fail {i}") for i in range(4)])
        coordinator, sleep = _coordinator(transport)

        with pytest.raises(Exhausted) as exc_info:
            await coordinator.run(ASSET, BucketClass.POSTS)

        assert exc_info.value.attempts == 4
        assert exc_info.value.cause_kind == "TransferTransient"
        assert str(exc_info.value.cause) == "fail 3"
        assert sleep.await_count == 3

    @pytest.mark.asyncio
    async def test_custom_retry_budget(self):
        transport = _transport(transfer=[TransferTransient("x")] * 2)
        coordinator, _ = _coordinator(transport, config=UploadConfig(max_retries=1))

        with pytest.raises(Exhausted) as exc_info:
            await coordinator.run(ASSET, BucketClass.POSTS)
        assert exc_info.value.attempts == 2

    @pytest.mark.asyncio
    async def test_unauthenticated_is_not_retried(self):
        transport = _transport()
        coordinator, sleep = _coordinator(transport, credentials=_credentials(session=None))

        with pytest.raises(Unauthenticated):
            await coordinator.run(ASSET, BucketClass.POSTS)

        transport.authorize.assert_not_awaited()
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_authorization_denied_is_terminal(self):
        transport = _transport(authorize=[AuthorizationDenied("denied", status_code=401)])
        coordinator, sleep = _coordinator(transport)

        with pytest.raises(AuthorizationDenied) as exc_info:
            await coordinator.run(ASSET, BucketClass.POSTS)

        assert exc_info.value.attempts == 1
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rejected_transfer_is_terminal(self):
        transport = _transport(transfer=[TransferRejected("bad request", status_code=400)])
        coordinator, _ = _coordinator(transport)

        with pytest.raises(TransferRejected):
            await coordinator.run(ASSET, BucketClass.POSTS)
        assert transport.authorize.await_count == 1

    @pytest.mark.asyncio
    async def test_forbidden_retried_once_with_refresh(self):
        refresher = Mock()
        refresher.refresh = AsyncMock(return_value=BearerSession("tok-2", "ref"))
        credentials = _credentials(BearerSession("tok", "ref"), refresher)
        transport = _transport(transfer=[TransferForbidden("denied"), None])
        coordinator, _ = _coordinator(transport, credentials=credentials)

        result = await coordinator.run(ASSET, BucketClass.POSTS)

        assert result.attempts == 2
        refresher.refresh.assert_awaited_once()
        second_token = transport.authorize.await_args_list[1].args[2]
        assert second_token == "tok-2"

    @pytest.mark.asyncio
    async def test_second_forbidden_is_terminal(self):
        refresher = Mock()
        refresher.refresh = AsyncMock(return_value=BearerSession("tok-2", "ref"))
        credentials = _credentials(BearerSession("tok", "ref"), refresher)
        transport = _transport(transfer=[TransferForbidden("denied"), TransferForbidden("denied"), None])
        coordinator, _ = _coordinator(transport, credentials=credentials)

        with pytest.raises(TransferForbidden) as exc_info:
            await coordinator.run(ASSET, BucketClass.POSTS)

        assert exc_info.value.attempts == 2
        assert transport.transfer.await_count == 2

    @pytest.mark.asyncio
    async def test_reissued_key_is_not_reused(self):
        s1, s2 = _sessions(2)
        transport = _transport(authorize=[s1, s1, s2], transfer=[TransferTransient("reset"), None])
        coordinator, _ = _coordinator(transport)

        result = await coordinator.run(ASSET, BucketClass.POSTS)

        assert result.attempts == 3
        assert result.object_key == s2.object_key
        assert transport.transfer.await_count == 2

    @pytest.mark.asyncio
    async def test_unreachable_every_attempt_means_primary_unavailable(self):
        unreachable = [AuthorizationTransient("refused", unreachable=True) for _ in range(4)]
        transport = _transport(authorize=unreachable)
        coordinator, _ = _coordinator(transport)

        with pytest.raises(PrimaryPathUnavailable) as exc_info:
            await coordinator.run(ASSET, BucketClass.POSTS)

        assert exc_info.value.attempts == 4
        assert isinstance(exc_info.value.cause, Exhausted)
        assert transport.authorize.await_count == 4

    @pytest.mark.asyncio
    async def test_partly_unreachable_is_exhausted(self):
        errors = [AuthorizationTransient("refused", unreachable=True)] * 3 + [AuthorizationTransient("503")]
        transport = _transport(authorize=errors)
        coordinator, _ = _coordinator(transport)

        with pytest.raises(Exhausted):
            await coordinator.run(ASSET, BucketClass.POSTS)

    @pytest.mark.asyncio
    async def test_missing_endpoint_propagates(self):
        transport = _transport(authorize=[PrimaryPathUnavailable("404")])
        coordinator, sleep = _coordinator(transport)

        with pytest.raises(PrimaryPathUnavailable):
            await coordinator.run(ASSET, BucketClass.POSTS)
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_emits_state_and_retry_events(self):
        events = EventEmitter()
        phases = []
        retries = []
        events.on(STATE, lambda change: phases.append(change.phase))
        events.on(RETRY, lambda filename, attempt, error: retries.append((filename, attempt, error.kind)))

        transport = _transport(transfer=[TransferTransient("reset"), None])
        coordinator, _ = _coordinator(transport, events=events)

        await coordinator.run(ASSET, BucketClass.POSTS)

        assert retries == [("photo.jpg", 1, "TransferTransient")]
        assert phases == [
            RetryPhase.AUTHORIZING.value,
            RetryPhase.TRANSFERRING.value,
            RetryPhase.BACKOFF.value,
            RetryPhase.AUTHORIZING.value,
            RetryPhase.TRANSFERRING.value,
            RetryPhase.SUCCEEDED.value,
        ]

    @pytest.mark.asyncio
    async def test_events_and_result_use_given_name(self):
        events = EventEmitter()
        names = []
        events.on(STATE, lambda change: names.append(change.filename))
        events.on(RETRY, lambda filename, attempt, error: names.append(filename))

        transport = _transport(transfer=[TransferTransient("reset"), None])
        coordinator, _ = _coordinator(transport, events=events)

        result = await coordinator.run(ASSET, BucketClass.POSTS, name="photo.png")

        assert result.filename == "photo.png"
        assert set(names) == {"photo.png"}

    def test_backoff_jitter_bounded(self):
        coordinator, _ = _coordinator(_transport(), config=UploadConfig(backoff_jitter_ms=250))
        for retry in (1, 2, 3):
            delay = coordinator.backoff_delay_ms(retry)
            base = UploadConfig().backoff_ms(retry)
            assert base <= delay <= base + 250
