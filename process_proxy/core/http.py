import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Union
from urllib.parse import urlsplit

import httpx

from .config import ProxyConfig


logger = logging.getLogger(__name__)

LOG_BODY_LIMIT = 500
AUTH_FAILURE_STATUSES = {401, 403}


@dataclass(frozen=True)
class Success:
    status: int
    body: bytes
    content_type: str = ""
    attempts: int = 1


@dataclass(frozen=True)
class ClientError:
    status: int
    body: bytes = b""
    attempts: int = 1


@dataclass(frozen=True)
class ServerError:
    status: int
    body: bytes = b""
    attempts: int = 1


@dataclass(frozen=True)
class UnexpectedStatus:
    status: int
    body: bytes = b""
    attempts: int = 1


@dataclass(frozen=True)
class TransportError:
    cause: str
    attempts: int = 1


HttpOutcome = Union[Success, ClientError, ServerError, UnexpectedStatus, TransportError]


def ensure_http_url(request_url: str) -> str:
    """Ensure the provided URL uses an allowed HTTP/HTTPS scheme."""
    parsed = urlsplit(request_url)
    if parsed.scheme.lower() not in {"http", "https"}:
        raise ValueError(f"Unsupported URL scheme: {request_url}")
    if not parsed.netloc:
        raise ValueError(f"URL missing network location: {request_url}")
    return request_url


def truncate_body(body: bytes, limit: int = LOG_BODY_LIMIT) -> str:
    return body[:limit].decode("utf-8", errors="replace") if body else "nil"


def classify_response(response: httpx.Response, attempts: int) -> HttpOutcome:
    status = response.status_code
    body = response.content
    if status == 200:
        return Success(status, body, response.headers.get("content-type", ""), attempts)
    if status in AUTH_FAILURE_STATUSES:
        return ClientError(status, body, attempts)
    if 500 <= status <= 599:
        return ServerError(status, body, attempts)
    return UnexpectedStatus(status, body, attempts)


class RetryingHttpClient:
    """Issue one logical GET against the upstream API with bounded retries.

    - Retries only server errors (5xx) and transport failures.
    - 401/403 and any other non-200 status are returned on first sight.
    - Waits ``attempt * backoff_seconds`` between attempts without blocking the loop.
    """

    def __init__(
        self,
        *,
        connect_timeout: float = 15.0,
        read_timeout: float = 30.0,
        max_retries: int = 2,
        backoff_seconds: float = 1.0,
        user_agent: str = "ProcessProxy/1.0",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.default_timeout = httpx.Timeout(read_timeout, connect=connect_timeout)
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.user_agent = user_agent
        self._transport = transport
        self._sleep = sleep
        self._log = log or logger

    @classmethod
    def from_config(cls, config: ProxyConfig, **kwargs) -> "RetryingHttpClient":
        return cls(
            connect_timeout=config.connect_timeout,
            read_timeout=config.read_timeout,
            max_retries=config.max_retries,
            backoff_seconds=config.backoff_seconds,
            user_agent=config.user_agent,
            **kwargs,
        )

    def _build_headers(self, headers: Optional[Dict[str, str]]) -> Dict[str, str]:
        merged = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
        }
        if headers:
            merged.update(headers)
        return merged

    async def _attempt(self, url: str, headers: Dict[str, str], timeout: httpx.Timeout, attempt: int) -> HttpOutcome:
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                response = await client.get(url, headers=headers)
        except httpx.TimeoutException as e:
            return TransportError(f"timeout: {type(e).__name__}", attempt)
        except httpx.HTTPError as e:
            return TransportError(f"{type(e).__name__}: {e}", attempt)
        except (httpx.InvalidURL, UnicodeEncodeError) as e:
            # The request could not be built, so nothing was sent.
            return TransportError(f"invalid request: {type(e).__name__}: {e}", attempts=0)
        return classify_response(response, attempt)

    async def call(
        self,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        *,
        timeout: Optional[httpx.Timeout] = None,
        max_retries: Optional[int] = None,
    ) -> HttpOutcome:
        try:
            ensure_http_url(url)
        except ValueError as e:
            self._log.error(f"Refusing to send request: {e}")
            return TransportError(str(e), attempts=0)
        request_headers = self._build_headers(headers)
        request_timeout = timeout or self.default_timeout
        retries_allowed = self.max_retries if max_retries is None else max_retries
        total_attempts = retries_allowed + 1

        attempt = 1
        while True:
            self._log.info(f"Sending GET request to: {url}, attempt {attempt} of {total_attempts}")
            outcome = await self._attempt(url, request_headers, request_timeout, attempt)

            if isinstance(outcome, Success):
                self._log.info(f"Received response: code {outcome.status}, body length: {len(outcome.body)}")
                return outcome
            if isinstance(outcome, ClientError):
                self._log.error(f"Authentication error: {outcome.status} - token may be invalid or expired")
                return outcome
            if isinstance(outcome, UnexpectedStatus):
                self._log.error(f"Unexpected response code: {outcome.status} - {truncate_body(outcome.body, 200)}")
                return outcome
            if isinstance(outcome, TransportError) and outcome.attempts == 0:
                self._log.error(f"Refusing to send request to {url}: {outcome.cause}")
                return outcome

            if isinstance(outcome, ServerError):
                self._log.error(f"Server error {outcome.status}: {truncate_body(outcome.body)}")
            else:
                self._log.error(f"Transport failure for {url}: {outcome.cause}")

            if attempt >= total_attempts:
                self._log.error(f"Max retries reached after {attempt} attempts. Giving up.")
                return outcome

            delay = attempt * self.backoff_seconds
            self._log.info(f"Will retry request ({attempt}/{retries_allowed}) in {delay:.1f}s...")
            await self._sleep(delay)
            attempt += 1
