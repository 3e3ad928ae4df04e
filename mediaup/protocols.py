"""
Protocols (Interfaces) for Dependency Inversion.

Following Interface Segregation Principle - small, focused interfaces.
"""
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

from .models import BucketClass, MediaAsset, ProgressEvent, UploadSession

ProgressCallback = Callable[[ProgressEvent], Any]


@runtime_checkable
class IAPIClient(Protocol):
    """Interface for calls to the authorization/proxy collaborator."""

    async def post(
        self,
        endpoint: str,
        json: Optional[Dict] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> Any:
        """POST request to API."""
        ...


class ISessionStore(ABC):
    """Where the process-wide bearer session lives (externally owned)."""

    @abstractmethod
    async def load(self):
        """Return the stored BearerSession or None."""
        pass

    @abstractmethod
    async def save(self, session) -> None:
        """Persist a refreshed BearerSession."""
        pass


class ITokenRefresher(ABC):
    """Interface to the external authentication service."""

    @abstractmethod
    async def refresh(self, session):
        """Exchange the session's refresh token for a new BearerSession."""
        pass


class IUploadAuthorizer(ABC):
    """Interface for minting single-use upload sessions."""

    @abstractmethod
    async def authorize(
        self,
        bucket: BucketClass,
        filename: str,
        content_type: str,
        size: int,
        token: str,
    ) -> UploadSession:
        pass


class ITransferEngine(ABC):
    """Interface for moving bytes to a session's write URL."""

    @abstractmethod
    async def transfer(
        self,
        session: UploadSession,
        asset: MediaAsset,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        pass


class ITransport(ABC):
    """A single-shot way of getting an asset onto storage (the fallback path)."""

    @abstractmethod
    async def attempt(
        self,
        asset: MediaAsset,
        bucket: BucketClass,
        token: str,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadSession:
        """Run a single attempt. Returns the session describing the stored object."""
        pass
