"""
Authorizer Service - Single Responsibility: obtain single-use upload sessions.

Calls the authorization endpoint, which signs a short-lived write URL for
one object key. Storage credentials never reach the client.
"""
import logging
from typing import Optional

import httpx

from ..errors import (
    AuthorizationDenied,
    AuthorizationRejected,
    AuthorizationTransient,
    PrimaryPathUnavailable,
    ValidationError,
)
from ..models import BucketClass, UploadSession
from ..protocols import IAPIClient, IUploadAuthorizer
from .api_client import error_detail

logger = logging.getLogger(__name__)

# Endpoint missing or not deployed: the presigned path does not exist here
_UNAVAILABLE_STATUSES = {404, 405, 501}
_INVALID_INPUT_STATUSES = {400, 413, 415, 422}


class UploadAuthorizer(IUploadAuthorizer):
    """Requests an UploadSession for one declared file."""

    def __init__(
        self,
        api_client: IAPIClient,
        endpoint: str = "/functions/v1/generate-upload-url",
        timeout: float = 15,
    ):
        self._api = api_client
        self._endpoint = endpoint
        self._timeout = timeout

    async def authorize(
        self,
        bucket: BucketClass,
        filename: str,
        content_type: str,
        size: int,
        token: str,
    ) -> UploadSession:
        """
        Request a fresh write grant.

        Raises:
            AuthorizationDenied: 401/403
            ValidationError: server rejected the declared file
            PrimaryPathUnavailable: endpoint not deployed
            AuthorizationTransient: 5xx, timeout, network failure, bad body
            AuthorizationRejected: any other client error
        """
        logger.debug(f"[authorizer] Requesting upload session: bucket={bucket.value}, file={filename}, size={size}")
        try:
            response = await self._api.post(
                self._endpoint,
                json={
                    "bucket": bucket.value,
                    "fileName": filename,
                    "fileType": content_type,
                    "fileSize": size,
                },
                token=token,
                timeout=self._timeout,
            )
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            raise AuthorizationTransient(
                f"Authorization endpoint unreachable: {e!r}", unreachable=True
            ) from e
        except httpx.TimeoutException as e:
            raise AuthorizationTransient(f"Authorization request timed out: {e!r}") from e
        except httpx.TransportError as e:
            raise AuthorizationTransient(f"Network error during authorization: {e!r}") from e

        status = response.status_code
        if status >= 400:
            detail = error_detail(response)
            logger.warning(f"[authorizer] Failed to get upload URL ({status}): {detail}")
            if status in (401, 403):
                raise AuthorizationDenied(
                    f"Authentication error. Please try logging in again. ({status})", status_code=status
                )
            if status in _UNAVAILABLE_STATUSES:
                raise PrimaryPathUnavailable(f"Authorization endpoint unavailable ({status})")
            if status in _INVALID_INPUT_STATUSES:
                raise ValidationError(f"Upload rejected by server: {detail}")
            if status >= 500 or status in (408, 429):
                raise AuthorizationTransient(
                    f"Failed to generate upload URL: {status}", status_code=status
                )
            raise AuthorizationRejected(f"Failed to generate upload URL: {status}", status_code=status)

        return self._parse_session(response)

    @staticmethod
    def _parse_session(response: httpx.Response) -> UploadSession:
        try:
            body = response.json()
            return UploadSession(
                upload_url=body["uploadUrl"],
                public_url=body["publicUrl"],
                object_key=body.get("fileKey") or _key_from_url(body["publicUrl"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise AuthorizationTransient(f"Malformed upload session response: {e!r}") from e


def _key_from_url(public_url: str) -> Optional[str]:
    return httpx.URL(public_url).path.lstrip("/") or None
