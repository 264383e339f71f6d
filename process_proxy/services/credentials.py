import json
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..core.tokens import normalize_token


logger = logging.getLogger(__name__)

CredentialSource = Callable[[], Awaitable[Optional[str]]]


class StaticCredentialSource:
    """Credential source that always hands back the same raw value."""

    def __init__(self, raw: Optional[str]) -> None:
        self._raw = raw

    async def __call__(self) -> Optional[str]:
        return self._raw


def extract_refresh_token(result: Any) -> Optional[str]:
    """Pull a token out of whatever shape a refresh endpoint returned.

    - a bare string is the token itself, unless it is JSON holding one
    - an object carries it under ``access_token``
    """
    if isinstance(result, str):
        if result.startswith("{") and "access_token" in result:
            try:
                parsed = json.loads(result)
            except ValueError:
                return normalize_token(result)
            return extract_refresh_token(parsed)
        return normalize_token(result)
    if isinstance(result, dict):
        token = result.get("access_token")
        if isinstance(token, str):
            return normalize_token(token)
    return None


class RefreshEndpointCredentialSource:
    """Ask a token-refresh endpoint for a fresh access token on every call.

    Any failure (network, status, unexpected shape) yields None; callers treat
    that as "no credential".
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        headers: Optional[dict] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.url = url
        self.timeout = timeout
        self.headers = {"Accept": "application/json", "Content-Type": "application/json", **(headers or {})}
        self._transport = transport
        self._log = log or logger

    async def __call__(self) -> Optional[str]:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.url, headers=self.headers)
        except httpx.HTTPError as e:
            self._log.warning(f"Error from token refresh endpoint {self.url}: {type(e).__name__} - {e}")
            return None

        if response.status_code != 200:
            self._log.warning(f"Token refresh endpoint returned {response.status_code}: {response.text[:200]}")
            return None

        try:
            result: Any = response.json()
        except ValueError:
            result = response.text

        token = extract_refresh_token(result)
        if token:
            self._log.info("Successfully retrieved access token from refresh endpoint")
        else:
            self._log.warning(f"No access_token could be extracted from refresh response of type {type(result).__name__}")
        return token
