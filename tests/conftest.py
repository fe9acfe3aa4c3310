"""Shared fixtures: an in-memory stand-in for ``requests.Session``.

Routes map absolute URLs to ``(status, body, content_type)`` tuples, or to an
exception instance that ``get`` raises. Every call builds a fresh real
``requests.Response`` whose body is served through ``Response.raw`` so the
streaming code path is exercised exactly as with a live connection.
"""

from __future__ import annotations

import io
import threading
from pathlib import Path
from typing import Dict, List, Tuple, Union

import pytest
import requests

Route = Union[Tuple[int, bytes, str], Exception]


class FakeSession:
    def __init__(self, routes: Dict[str, Route] | None = None) -> None:
        self.routes: Dict[str, Route] = dict(routes or {})
        self.calls: List[str] = []
        self.headers: Dict[str, str] = {}
        self._lock = threading.Lock()

    def add_html(self, url: str, html: str, status: int = 200) -> None:
        self.routes[url] = (status, html.encode("utf-8"), "text/html; charset=utf-8")

    def add_bytes(self, url: str, body: bytes, content_type: str, status: int = 200) -> None:
        self.routes[url] = (status, body, content_type)

    def count(self, url: str) -> int:
        with self._lock:
            return self.calls.count(url)

    def get(self, url: str, timeout: float | None = None, stream: bool = False) -> requests.Response:
        with self._lock:
            self.calls.append(url)
        route = self.routes.get(url, (404, b"Not Found", "text/plain"))
        if isinstance(route, Exception):
            raise route
        status, body, content_type = route
        resp = requests.Response()
        resp.status_code = status
        resp.url = url
        resp.headers["Content-Type"] = content_type
        resp.raw = io.BytesIO(body)
        return resp

    def close(self) -> None:
        pass


@pytest.fixture()
def session() -> FakeSession:
    return FakeSession()


def saved_files(root: Path) -> List[str]:
    """Return every file under *root* as a sorted list of POSIX relative paths."""
    return sorted(p.relative_to(root).as_posix() for p in root.rglob("*") if p.is_file())
