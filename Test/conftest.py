# 18.10.26

import threading
from collections import Counter
from typing import Dict, Tuple, Union

import httpx
import pytest


def ts_payload(index: int, size: int = 1024) -> bytes:
    """Fake MPEG-TS body: sync byte followed by a per-segment filler."""
    return b"\x47" + bytes([index % 251 + 1]) * (size - 1)


class MockServer:
    """URL -> response table served through ``httpx.MockTransport``."""

    def __init__(self):
        self.routes: Dict[str, Tuple[int, Union[bytes, str], Dict[str, str]]] = {}
        self.requests = []
        self.hits = Counter()
        self._lock = threading.Lock()

    def add(self, url: str, body: Union[bytes, str], status: int = 200, headers: Dict[str, str] = None):
        self.routes[url] = (status, body, headers or {})

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        with self._lock:
            self.requests.append(request)
            self.hits[url] += 1

        if url not in self.routes:
            return httpx.Response(404, content=b"not found")
        status, body, headers = self.routes[url]
        content = body.encode("utf-8") if isinstance(body, str) else body
        return httpx.Response(status, content=content, headers=headers)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def count(self, fragment: str) -> int:
        with self._lock:
            return sum(n for url, n in self.hits.items() if fragment in url)


@pytest.fixture
def server():
    return MockServer()


@pytest.fixture
def payload():
    return ts_payload
