"""HTTP adapter for the authorization / proxy collaborator."""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx


class HTTPAPIClient:
    """
    HTTP client adapter for API calls.

    Implements IAPIClient protocol. Status codes are returned untouched;
    classification belongs to the calling service.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 30,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _headers(self, token: Optional[str]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self._api_key:
            headers["apikey"] = self._api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def post(
        self,
        endpoint: str,
        json: Optional[Dict] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        **kwargs,
    ) -> httpx.Response:
        if not self._client:
            raise RuntimeError("HTTPAPIClient not initialized. Use 'async with' context.")

        return await self._client.post(
            endpoint,
            json=json,
            headers=self._headers(token),
            timeout=timeout if timeout is not None else self._timeout,
            **kwargs,
        )


def error_detail(response: httpx.Response) -> Any:
    """Best-effort error body for log lines and messages."""
    try:
        body = response.json()
    except Exception:
        return response.text
    if isinstance(body, dict):
        return body.get("error") or body.get("message") or body.get("msg") or body
    return body
