import json
import logging
from typing import Any, Dict, List, Optional, Union
from urllib.parse import quote

import httpx

from ..core.config import ProxyConfig
from ..core.http import (
    ClientError,
    HttpOutcome,
    RetryingHttpClient,
    ServerError,
    Success,
    TransportError,
    UnexpectedStatus,
    truncate_body,
)
from ..core.models import (
    ErrorKind,
    FetchFailed,
    FetchOk,
    FetchResult,
    PreviewImage,
    ProcessDetail,
    ProcessSummary,
)
from ..core.tokens import looks_like_jwt, normalize_token, token_preview
from ..core.validation import is_valid_process_id, normalize_endpoint
from .shapes import resolve_items


logger = logging.getLogger(__name__)

OWNED_PROCESSES_PATH = "processes/owned"
PROCESS_PATH = "processes/{process_id}"
PROCESS_SVG_PATH = "processes/{process_id}/svg"


def summarize_items(items: List[Dict[str, Any]], log: logging.Logger) -> List[ProcessSummary]:
    """Turn resolved upstream objects into summaries with unique, non-empty ids."""
    summaries: List[ProcessSummary] = []
    seen = set()
    for item in items:
        summary = ProcessSummary.from_upstream(item)
        if summary is None:
            log.warning(f"Skipping process without an id. Keys: {', '.join(map(str, item.keys()))}")
            continue
        if summary.id in seen:
            log.warning(f"Skipping duplicate process id {summary.id}")
            continue
        seen.add(summary.id)
        summaries.append(summary)
    return summaries


def failure_for_outcome(outcome: HttpOutcome) -> FetchFailed:
    if isinstance(outcome, ClientError):
        return FetchFailed(ErrorKind.AUTH_EXPIRED, f"Upstream rejected the credential ({outcome.status})")
    if isinstance(outcome, ServerError):
        return FetchFailed(
            ErrorKind.UPSTREAM,
            f"Upstream server error {outcome.status} after {outcome.attempts} attempt(s)",
        )
    if isinstance(outcome, TransportError):
        return FetchFailed(
            ErrorKind.UPSTREAM,
            f"Upstream unreachable after {outcome.attempts} attempt(s): {outcome.cause}",
        )
    if isinstance(outcome, UnexpectedStatus):
        if outcome.status == 404:
            return FetchFailed(ErrorKind.NOT_FOUND, "Upstream resource not found")
        return FetchFailed(ErrorKind.UPSTREAM, f"Unexpected upstream response code {outcome.status}")
    return FetchFailed(ErrorKind.UPSTREAM, f"Unhandled upstream outcome {type(outcome).__name__}")


class ProcessProxyService:
    """Fetch a user's remote processes and their previews through the retrying client.

    Holds configuration only, so one instance can serve concurrent requests.
    """

    def __init__(
        self,
        config: ProxyConfig,
        http_client: Optional[RetryingHttpClient] = None,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self._log = log or logger
        self.http_client = http_client or RetryingHttpClient.from_config(config, log=self._log)

    @property
    def preview_timeout(self) -> httpx.Timeout:
        return httpx.Timeout(self.config.preview_read_timeout, connect=self.config.preview_connect_timeout)

    def _auth_headers(self, token: Optional[str]) -> Dict[str, str]:
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def _credential(self, raw_credential: Optional[str]) -> Optional[str]:
        token = normalize_token(raw_credential, self._log)
        if token and not token.isascii():
            # Header values must be ASCII; such a token can never authenticate.
            self._log.warning(f"Ignoring credential with non-ASCII characters: {token_preview(token)}")
            return None
        if token:
            shape = "looks like JWT" if looks_like_jwt(token) else "does not look like standard JWT"
            self._log.info(f"Using token (preview): {token_preview(token)} ({shape})")
        return token

    async def fetch_owned(self, raw_credential: Optional[str]) -> FetchResult:
        token = self._credential(raw_credential)
        if not token:
            self._log.error("No credential provided for fetch_owned")
            return FetchFailed(ErrorKind.NO_CREDENTIAL, "No access token available")

        url = self.config.endpoint_url(OWNED_PROCESSES_PATH)
        outcome = await self.http_client.call(url, self._auth_headers(token))
        if not isinstance(outcome, Success):
            return failure_for_outcome(outcome)

        items = resolve_items(outcome.body, self._log)
        summaries = summarize_items(items, self._log)
        self._log.info(f"Processes retrieved: {len(summaries)}")
        return FetchOk(summaries)

    async def fetch_detail(self, raw_credential: Optional[str], process_id: str) -> FetchResult:
        if not is_valid_process_id(process_id):
            return FetchFailed(ErrorKind.NOT_FOUND, f"Invalid process id {process_id!r}")
        token = self._credential(raw_credential)
        if not token:
            return FetchFailed(ErrorKind.NO_CREDENTIAL, "No access token available")

        url = self.config.endpoint_url(PROCESS_PATH.format(process_id=quote(process_id)))
        outcome = await self.http_client.call(url, self._auth_headers(token))
        if not isinstance(outcome, Success):
            return failure_for_outcome(outcome)

        try:
            payload = json.loads(outcome.body)
        except ValueError:
            self._log.error(f"Process {process_id} response is not JSON: {truncate_body(outcome.body)}")
            return FetchFailed(ErrorKind.MALFORMED_RESPONSE, "Process response is not JSON")

        detail = ProcessDetail.from_upstream(payload) if isinstance(payload, dict) else None
        if detail is None:
            self._log.warning(f"Process {process_id} response has an unexpected shape")
            return FetchFailed(ErrorKind.MALFORMED_RESPONSE, "Process response has an unexpected shape")
        return FetchOk(detail)

    async def fetch_preview(
        self,
        process_id: str,
        raw_credential: Optional[str] = None,
    ) -> Union[PreviewImage, FetchFailed]:
        """Fetch the SVG preview for one process in a single attempt.

        A missing credential sends an anonymous request. Every failure comes back
        as ``FetchFailed(NOT_FOUND)``; a missing preview never fails the caller.
        """
        if not is_valid_process_id(process_id):
            self._log.warning(f"No valid process ID provided for preview: {process_id!r}")
            return FetchFailed(ErrorKind.NOT_FOUND, "No preview available")

        token = self._credential(raw_credential)
        url = self.config.endpoint_url(PROCESS_SVG_PATH.format(process_id=quote(process_id)))
        headers = {"Accept": "*/*", **self._auth_headers(token)}
        outcome = await self.http_client.call(url, headers, timeout=self.preview_timeout, max_retries=0)
        if not isinstance(outcome, Success):
            self._log.warning(f"Failed to fetch SVG for process {process_id}: {type(outcome).__name__}")
            return FetchFailed(ErrorKind.NOT_FOUND, "No preview available")

        self._log.info(f"Successfully fetched SVG, content length: {len(outcome.body)}, Content-Type: {outcome.content_type}")
        return PreviewImage(process_id, outcome.body, outcome.content_type or "image/svg+xml")

    async def fetch_endpoint(self, raw_credential: Optional[str], endpoint: str) -> FetchResult:
        try:
            path = normalize_endpoint(endpoint)
        except ValueError as e:
            return FetchFailed(ErrorKind.NOT_FOUND, str(e))
        token = self._credential(raw_credential)
        if not token:
            return FetchFailed(ErrorKind.NO_CREDENTIAL, "No access token available")

        outcome = await self.http_client.call(self.config.endpoint_url(path), self._auth_headers(token))
        if not isinstance(outcome, Success):
            return failure_for_outcome(outcome)
        try:
            return FetchOk(json.loads(outcome.body))
        except ValueError:
            self._log.error(f"Response from {path} is not JSON: {truncate_body(outcome.body)}")
            return FetchFailed(ErrorKind.MALFORMED_RESPONSE, "API response is not JSON")
