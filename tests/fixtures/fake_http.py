"""
Offline stand-ins for ``requests.Session`` used by the fetcher and sync tests.

Each route maps a URI to a list of outcomes consumed one per request:
  - ``bytes``: 200 with that body
  - ``int``: that status code with an empty body
  - ``Exception`` instance: raised from ``get``
  - ``Broken(prefix)``: 200 whose body stream fails after ``prefix``
The last outcome repeats once the list is exhausted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import requests


@dataclass
class Broken:
    prefix: bytes = b""


class FakeResponse:
    def __init__(self, url: str, status_code: int = 200, body: bytes = b"", broken: bool = False):
        self.url = url
        self.status_code = status_code
        self._body = body
        self._broken = broken
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False

    def close(self):
        self.closed = True

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} for url: {self.url}", response=self)

    def iter_content(self, chunk_size=1):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]
        if self._broken:
            raise requests.exceptions.ChunkedEncodingError("connection reset mid-body")


@dataclass
class FakeSession:
    routes: dict[str, list[Any]] = field(default_factory=dict)
    calls: list[tuple[str, dict]] = field(default_factory=list)
    closed: bool = False

    def add(self, uri: str, *outcomes: Any) -> "FakeSession":
        self.routes.setdefault(uri, []).extend(outcomes)
        return self

    def attempts(self, uri: str) -> int:
        return sum(1 for called, _ in self.calls if called == uri)

    def get(self, uri: str, **kwargs):
        self.calls.append((uri, kwargs))
        outcomes = self.routes.get(uri)
        if not outcomes:
            return FakeResponse(uri, status_code=404)
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, Broken):
            return FakeResponse(uri, body=outcome.prefix, broken=True)
        if isinstance(outcome, int):
            return FakeResponse(uri, status_code=outcome)
        return FakeResponse(uri, body=outcome)

    def close(self):
        self.closed = True
