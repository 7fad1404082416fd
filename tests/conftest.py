# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import pagefilter  # noqa: F401
except ImportError:
    raise ImportError("pagefilter is not installed. Run: pip install -e '.[dev]'") from None

import json

import httpx
import pytest

from pagefilter.document import LiveDocument

ARTICLE_HTML = """<!DOCTYPE html>
<html>
<head><title>explicit title stays</title><style>.explicit { color: red }</style></head>
<body>
  <h1>Welcome</h1>
  <p id="p1">this content is explicit</p>
  <p id="p2">A perfectly ordinary paragraph about gardening.</p>
  <script>var explicit = true;</script>
  <img id="hero" src="https://cdn.example.com/hero.jpg" width="400" height="300" style="margin: 4px">
  <img id="icon" src="https://cdn.example.com/icon.png" width="16" height="16">
</body>
</html>
"""


@pytest.fixture
def article_html() -> str:
    return ARTICLE_HTML


@pytest.fixture
def document() -> LiveDocument:
    return LiveDocument.from_html(ARTICLE_HTML, url="https://www.example.com/articles/1")


class FakeBackend:
    """Scripted moderation backend for ``httpx.MockTransport``.

    ``text_response`` / ``image_response`` are JSON bodies (or a callable
    taking the request). ``fail`` makes every backend call raise ConnectError.
    Image downloads (any non-backend GET) return ``image_body``.
    """

    def __init__(self, base_url: str = "http://backend.test") -> None:
        self.base_url = base_url
        self.text_response: object = {"original": "", "filtered": "", "hasExplicitContent": False, "ai": {}}
        self.image_response: object = {"shouldFilter": False, "confidence": 0.1, "method": "vertex"}
        self.health_response: object = {"status": "ok"}
        self.status_code = 200
        self.fail = False
        self.image_body = b"\xff\xd8\xff\xe0fake-jpeg"
        self.requests: list[httpx.Request] = []

    def paths(self) -> list[str]:
        return [r.url.path for r in self.requests]

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    def _body(self, response: object, request: httpx.Request) -> object:
        return response(request) if callable(response) else response

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not str(request.url).startswith(self.base_url):
            return httpx.Response(200, content=self.image_body, headers={"content-type": "image/jpeg"})
        if self.fail:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/filter/text":
            body = self._body(self.text_response, request)
        elif request.url.path == "/filter/image":
            body = self._body(self.image_response, request)
        elif request.url.path == "/health":
            body = self._body(self.health_response, request)
        else:
            return httpx.Response(404, json={"error": "not found"})
        if isinstance(body, str):
            return httpx.Response(self.status_code, text=body)
        return httpx.Response(self.status_code, content=json.dumps(body).encode(), headers={"content-type": "application/json"})


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
async def http_client(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend)) as client:
        yield client
