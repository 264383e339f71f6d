"""Shared fixtures for the process proxy tests."""

import json
from typing import Callable, List

import httpx
import pytest

from process_proxy.core.config import ProxyConfig
from process_proxy.core.http import RetryingHttpClient
from process_proxy.services.process_service import ProcessProxyService

BASE_URL = "https://upstream.test/api"


class Recorder:
    """Collects upstream requests and backoff delays."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.delays: List[float] = []

    async def sleep(self, seconds: float) -> None:
        self.delays.append(seconds)

    @property
    def paths(self) -> List[str]:
        return [request.url.path for request in self.requests]


def json_response(payload, status_code: int = 200) -> httpx.Response:
    return httpx.Response(status_code, content=json.dumps(payload).encode(), headers={"content-type": "application/json"})


def scripted(responses: list, recorder: Recorder) -> Callable[[httpx.Request], httpx.Response]:
    """Handler that replays ``responses`` in order; exceptions are raised."""
    remaining = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        recorder.requests.append(request)
        item = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item.status_code, headers=item.headers, content=item.content)

    return handler


@pytest.fixture
def config() -> ProxyConfig:
    return ProxyConfig(api_base_url=BASE_URL, backoff_seconds=1.0)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_client(recorder):
    def _make(handler, **kwargs) -> RetryingHttpClient:
        return RetryingHttpClient(transport=httpx.MockTransport(handler), sleep=recorder.sleep, **kwargs)

    return _make


@pytest.fixture
def make_service(config, recorder):
    def _make(handler) -> ProcessProxyService:
        client = RetryingHttpClient.from_config(config, transport=httpx.MockTransport(handler), sleep=recorder.sleep)
        return ProcessProxyService(config, http_client=client)

    return _make
