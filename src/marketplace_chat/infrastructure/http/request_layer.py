"""httpx request layer with bearer injection."""
from __future__ import annotations

import logging
from typing import Any

import httpx

from marketplace_chat.application.exceptions import ApiError
from marketplace_chat.application.ports.credentials import CredentialStore

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            if body.get(key):
                return str(body[key])
    return f"HTTP {response.status_code}: {response.reason_phrase}"


class HttpRequestLayer:
    def __init__(
        self,
        base_url: str,
        credentials: CredentialStore,
        *,
        timeout: float = 15.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)

    async def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        headers: dict[str, str] = {}
        token = self._credentials.get_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self._client.request(method, path, json=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise ApiError(str(exc) or exc.__class__.__name__) from exc

        if response.is_error:
            raise ApiError(_error_detail(response), response.status_code)
        if not response.content:
            return None
        return response.json()

    async def aclose(self) -> None:
        await self._client.aclose()
