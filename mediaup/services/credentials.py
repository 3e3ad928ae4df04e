"""
Credential Service - Single Responsibility: hand out a non-expired bearer session.

The session is process-wide and read-mostly. Refreshes are single-flight:
concurrent callers await one shared refresh task instead of each calling
the auth service.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx

from ..errors import Unauthenticated
from ..protocols import IAPIClient, ISessionStore, ITokenRefresher
from .api_client import error_detail

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BearerSession:
    """Bearer credential issued by the auth service."""
    access_token: str = field(repr=False)
    refresh_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[float] = None  # epoch seconds

    def remaining(self, now: float) -> float:
        if self.expires_at is None:
            return float("inf")
        return self.expires_at - now

    def valid_for(self, seconds: float, now: float) -> bool:
        return self.remaining(now) >= seconds

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], now: Optional[float] = None) -> "BearerSession":
        """Parse a stored session or a token endpoint response."""
        access_token = data.get("access_token")
        if not access_token:
            raise ValueError("session has no access_token")
        expires_at = data.get("expires_at")
        if expires_at is None and data.get("expires_in") is not None:
            expires_at = (now if now is not None else time.time()) + float(data["expires_in"])
        return cls(
            access_token=access_token,
            refresh_token=data.get("refresh_token"),
            expires_at=float(expires_at) if expires_at is not None else None,
        )


class MemorySessionStore(ISessionStore):
    """In-process session store."""

    def __init__(self, session: Optional[BearerSession] = None):
        self._session = session

    async def load(self) -> Optional[BearerSession]:
        return self._session

    async def save(self, session: BearerSession) -> None:
        self._session = session


class FileSessionStore(ISessionStore):
    """JSON file session store (used by the CLI)."""

    def __init__(self, path: Path):
        self._path = Path(path)

    async def load(self) -> Optional[BearerSession]:
        def _read():
            if not self._path.exists():
                return None
            return json.loads(self._path.read_text(encoding="utf-8"))

        try:
            data = await asyncio.to_thread(_read)
        except (OSError, ValueError) as e:
            logger.warning(f"[credentials] Could not read session file {self._path}: {e}")
            return None
        if not data:
            return None
        try:
            return BearerSession.from_dict(data)
        except ValueError as e:
            logger.warning(f"[credentials] Ignoring invalid session file {self._path}: {e}")
            return None

    async def save(self, session: BearerSession) -> None:
        def _write():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp.write_text(json.dumps(session.to_dict()), encoding="utf-8")
            tmp.replace(self._path)

        await asyncio.to_thread(_write)


class HTTPTokenRefresher(ITokenRefresher):
    """Refresh-token grant against the auth service."""

    def __init__(self, api_client: IAPIClient, token_path: str = "/auth/v1/token", timeout: float = 15):
        self._api = api_client
        self._token_path = token_path
        self._timeout = timeout

    async def refresh(self, session: BearerSession) -> BearerSession:
        if not session.refresh_token:
            raise Unauthenticated("Session has no refresh token. Please log in again.")

        try:
            response = await self._api.post(
                f"{self._token_path}?grant_type=refresh_token",
                json={"refresh_token": session.refresh_token},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise Unauthenticated(f"Session refresh failed: {e}") from e

        if response.status_code >= 400:
            raise Unauthenticated(
                f"Session refresh rejected ({response.status_code}): {error_detail(response)}"
            )

        try:
            return BearerSession.from_dict(response.json())
        except ValueError as e:
            raise Unauthenticated(f"Session refresh returned an invalid body: {e}") from e


class CredentialManager:
    """
    Guarantees a bearer session valid for at least ``min_validity`` seconds.

    Usage:
        credentials = CredentialManager(store, refresher)
        session = await credentials.ensure_valid_session()
        headers = {"Authorization": f"Bearer {session.access_token}"}
    """

    def __init__(
        self,
        store: ISessionStore,
        refresher: Optional[ITokenRefresher] = None,
        min_validity: float = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._refresher = refresher
        self._min_validity = min_validity
        self._clock = clock
        self._session: Optional[BearerSession] = None
        self._loaded = False
        self._inflight: Optional[asyncio.Task] = None
        self.refresh_count = 0

    async def current(self) -> Optional[BearerSession]:
        if not self._loaded:
            self._session = await self._store.load()
            self._loaded = True
        return self._session

    async def ensure_valid_session(
        self,
        min_validity: Optional[float] = None,
        force_refresh: bool = False,
    ) -> BearerSession:
        """
        Return a session valid for at least ``min_validity`` seconds.

        Raises:
            Unauthenticated: no session, or refresh failed
        """
        min_validity = self._min_validity if min_validity is None else min_validity
        session = await self.current()

        if session is None:
            raise Unauthenticated("Not authenticated. Please log in to upload files.")

        if not force_refresh and session.valid_for(min_validity, self._clock()):
            return session

        if self._refresher is None:
            raise Unauthenticated("Session expired and no refresher is configured. Please log in again.")

        logger.info(
            f"[credentials] Session {'refresh forced' if force_refresh else 'expired or expiring soon'}, refreshing..."
        )
        return await self._refresh_once(session)

    async def _refresh_once(self, session: BearerSession) -> BearerSession:
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._do_refresh(session))
            self._inflight.add_done_callback(self._clear_inflight)
        else:
            logger.debug("[credentials] Joining in-flight refresh")
        # shield: one caller's cancellation must not abort the shared refresh
        return await asyncio.shield(self._inflight)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _do_refresh(self, session: BearerSession) -> BearerSession:
        self.refresh_count += 1
        try:
            refreshed = await self._refresher.refresh(session)
        except Unauthenticated:
            logger.error("[credentials] Session refresh failed")
            raise
        except Exception as e:
            logger.error(f"[credentials] Session refresh error: {e}")
            raise Unauthenticated(f"Authentication error. Please try logging in again. ({e})") from e

        self._session = refreshed
        await self._store.save(refreshed)
        logger.info("[credentials] Session refreshed")
        return refreshed
