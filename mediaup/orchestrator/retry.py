"""Bounded retry loop around authorize + transfer on the primary path."""
import asyncio
import logging
import random
import time
from typing import Awaitable, Callable, Optional

from ..errors import (
    AuthorizationTransient,
    Exhausted,
    PrimaryPathUnavailable,
    TransferForbidden,
    UploadError,
)
from ..models import (
    BucketClass,
    MediaAsset,
    RetryPhase,
    RetryState,
    UploadConfig,
    UploadResult,
)
from ..protocols import ProgressCallback
from ..services.credentials import CredentialManager
from ..services.transports import PresignedTransport
from ..utils.events import RETRY, STATE, EventEmitter, StateChange

logger = logging.getLogger(__name__)


class RetryCoordinator:
    """
    Drives one upload through Idle -> Authorizing -> Transferring -> Succeeded,
    looping through Backoff on retryable failures until the budget runs out.

    Every attempt gets a freshly validated credential and a brand-new upload
    session; sessions are single use.
    """

    def __init__(
        self,
        credentials: CredentialManager,
        transport: PresignedTransport,
        config: Optional[UploadConfig] = None,
        events: Optional[EventEmitter] = None,
        sleep: Callable[[float], Awaitable] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._credentials = credentials
        self._transport = transport
        self._config = config or UploadConfig()
        self._events = events
        self._sleep = sleep
        self._clock = clock

    @property
    def max_attempts(self) -> int:
        return self._config.max_retries + 1

    def backoff_delay_ms(self, retry: int) -> int:
        delay = self._config.backoff_ms(retry)
        if self._config.backoff_jitter_ms > 0:
            delay += random.randint(0, self._config.backoff_jitter_ms)
        return delay

    async def _enter(self, state: RetryState, phase: RetryPhase, name: str, detail: Optional[str] = None):
        state.phase = phase
        if self._events is not None:
            await self._events.emit(STATE, StateChange(name, phase.value, state.attempt, detail))

    async def run(
        self,
        asset: MediaAsset,
        bucket: BucketClass,
        on_progress: Optional[ProgressCallback] = None,
        state: Optional[RetryState] = None,
        name: Optional[str] = None,
    ) -> UploadResult:
        """
        Upload ``asset`` on the primary path. Events are labelled with ``name``
        (defaults to the asset filename).

        Raises:
            Unauthenticated, ValidationError, other non-retryable UploadErrors: immediately
            TransferForbidden: on the second forbidden response
            PrimaryPathUnavailable: endpoint missing, or unreachable on every attempt
            Exhausted: retry budget consumed
        """
        state = state if state is not None else RetryState()
        name = name or asset.filename
        started = self._clock()
        last_error: Optional[UploadError] = None
        force_refresh = False

        while state.attempt < self.max_attempts:
            state.attempt += 1

            if state.attempt > 1:
                retry = state.attempt - 1
                delay = self.backoff_delay_ms(retry)
                state.delays.append(delay)
                logger.info(
                    f"[retry] Retry attempt {retry}/{self._config.max_retries} for {asset.filename} after {delay}ms"
                )
                await self._enter(state, RetryPhase.BACKOFF, name, f"{delay}ms")
                await self._sleep(delay / 1000)

            try:
                session = await self._credentials.ensure_valid_session(force_refresh=force_refresh)
                force_refresh = False

                await self._enter(state, RetryPhase.AUTHORIZING, name)
                upload_session = await self._transport.authorize(asset, bucket, session.access_token)
                if upload_session.object_key in state.consumed_keys:
                    raise AuthorizationTransient(
                        f"Authorizer reissued consumed key {upload_session.object_key}"
                    )
                state.consumed_keys.add(upload_session.object_key)

                await self._enter(state, RetryPhase.TRANSFERRING, name)
                await self._transport.transfer(upload_session, asset, on_progress)
            except UploadError as e:
                last_error = e
                state.last_error_kind = e.kind
                state.elapsed = self._clock() - started
                e.attempts = state.attempt

                terminal = not e.retryable
                if isinstance(e, AuthorizationTransient) and e.unreachable:
                    state.unreachable_count += 1
                if isinstance(e, TransferForbidden):
                    state.forbidden_count += 1
                    # credentials may have just turned over: refresh once, then give up
                    terminal = state.forbidden_count > 1
                    force_refresh = True

                if terminal:
                    logger.error(f"[retry] Upload attempt {state.attempt} failed terminally ({e.kind}): {e}")
                    await self._enter(state, RetryPhase.EXHAUSTED, name, e.kind)
                    raise

                logger.warning(f"[retry] Upload attempt {state.attempt} failed ({e.kind}): {e}")
                if self._events is not None:
                    await self._events.emit(RETRY, name, state.attempt, e)
                continue

            state.elapsed = self._clock() - started
            await self._enter(state, RetryPhase.SUCCEEDED, name)
            return UploadResult.ok(
                filename=name,
                public_url=upload_session.public_url,
                object_key=upload_session.object_key,
                attempts=state.attempt,
            )

        await self._enter(state, RetryPhase.EXHAUSTED, name, state.last_error_kind)
        logger.error(f"[retry] All {state.attempt} upload attempts failed for {asset.filename}: {last_error}")
        exhausted = Exhausted(state.attempt, last_error)

        if state.unreachable_count == state.attempt:
            unavailable = PrimaryPathUnavailable(
                "Authorization endpoint unreachable on every attempt", cause=exhausted
            )
            unavailable.attempts = state.attempt
            raise unavailable from last_error
        raise exhausted from last_error
