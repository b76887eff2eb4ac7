"""
Shared pytest fixtures for relay-list-sync tests.

Provides:
- A quiet logger
- Canned requests.Response objects
- A FakeSession routing (method, url) pairs to canned responses
- Single-family and dual-stack Config instances
"""

from __future__ import annotations

import logging
from typing import Any, Callable
from unittest.mock import MagicMock

import pytest
import requests

import relay_list_sync as rls

API = "https://api.example.test/client/v4"
ACCOUNT = "acc123"
LISTS_URL = f"{API}/accounts/{ACCOUNT}/rules/lists"
FEED_URL = "https://feeds.example.test/egress.json"
FEED_V4_URL = "https://feeds.example.test/egress-v4.json"
FEED_V6_URL = "https://feeds.example.test/egress-v6.json"

_NO_BODY = object()


def make_response(status: int = 200, body: Any = _NO_BODY, text: str = "") -> MagicMock:
    """Build a requests.Response stand-in. A missing body makes .json() raise ValueError."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status
    response.ok = 200 <= status < 300
    response.text = text
    if body is _NO_BODY:
        response.json.side_effect = ValueError("No JSON object could be decoded")
    else:
        response.json.return_value = body
    return response


class FakeSession:
    """
    Minimal requests.Session replacement.

    routes maps (METHOD, url) to a response, an exception to raise, or a
    list of those consumed in order.
    """

    def __init__(self, routes: dict[tuple[str, str], Any]):
        self.routes = routes
        self.calls: list[tuple[str, str, dict]] = []

    def _dispatch(self, method: str, url: str, **kwargs):
        self.calls.append((method, url, kwargs))
        answer = self.routes[(method, url)]
        if isinstance(answer, list):
            answer = answer.pop(0)
        if isinstance(answer, BaseException):
            raise answer
        return answer

    def get(self, url, **kwargs):
        return self._dispatch("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._dispatch("POST", url, **kwargs)

    def put(self, url, **kwargs):
        return self._dispatch("PUT", url, **kwargs)

    def calls_to(self, method: str, url: str | None = None) -> list[tuple[str, str, dict]]:
        return [c for c in self.calls if c[0] == method and (url is None or c[1] == url)]


@pytest.fixture
def logger() -> logging.Logger:
    log = logging.getLogger("relay-list-sync.tests")
    log.setLevel(logging.DEBUG)
    return log


@pytest.fixture
def config() -> rls.Config:
    """Single-family configuration."""
    return rls.Config(
        account_id=ACCOUNT,
        api_token="token-abc",
        api_base_url=API,
        list_name="icloud_private_relay",
        ip_list_source_url=FEED_URL,
    )


@pytest.fixture
def dual_config() -> rls.Config:
    """Dual-stack configuration."""
    return rls.Config(
        account_id=ACCOUNT,
        api_token="token-abc",
        api_base_url=API,
        list_name="icloud_private_relay",
        ipv4_list_source_url=FEED_V4_URL,
        ipv6_list_source_url=FEED_V6_URL,
    )


@pytest.fixture
def api(logger) -> Callable[[FakeSession], rls.CloudflareListsAPI]:
    def factory(session: FakeSession) -> rls.CloudflareListsAPI:
        return rls.CloudflareListsAPI(
            base_url=API,
            account_id=ACCOUNT,
            api_token="token-abc",
            session=session,
            logger=logger,
        )
    return factory
