"""Services for mediaup module."""
from .validator import MediaValidator
from .preprocessor import ClientPreprocessor, PreparedMedia
from .credentials import (
    BearerSession,
    CredentialManager,
    FileSessionStore,
    HTTPTokenRefresher,
    MemorySessionStore,
)
from .authorizer import UploadAuthorizer
from .transfer import TransferEngine
from .transports import PresignedTransport, ProxyTransport

__all__ = [
    "MediaValidator",
    "ClientPreprocessor",
    "PreparedMedia",
    "BearerSession",
    "CredentialManager",
    "FileSessionStore",
    "HTTPTokenRefresher",
    "MemorySessionStore",
    "UploadAuthorizer",
    "TransferEngine",
    "PresignedTransport",
    "ProxyTransport",
]
