from __future__ import annotations

import logging
import os
import random
import tempfile
import time
from pathlib import Path
from typing import Callable

import requests

from updatemirror.credentials import ClientCredential
from updatemirror.errors import FetchError
from updatemirror.transport import DEFAULT_PROFILE, TransportProfile, build_session

log = logging.getLogger("updatemirror.fetcher")

CHUNK_SIZE = 64 * 1024
PARTIAL_SUFFIX = ".part"
PUBLISHED_MODE = 0o644


def backoff_delay(attempt: int, base: float = 0.0, cap: float = 30.0) -> float:
    if base <= 0:
        return 0.0
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0, exp * 0.25)
    return min(cap, exp + jitter)


def _partial_path(target: Path) -> Path:
    fd, name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=PARTIAL_SUFFIX)
    os.close(fd)
    return Path(name)


def _discard(partial: Path) -> None:
    try:
        partial.unlink(missing_ok=True)
    except OSError as exc:
        log.debug("fetcher.partial_cleanup_failed path=%s error=%s", partial, exc)


class RetryingFetcher:
    """GET a URI into a file, retrying up to a bounded number of attempts."""

    def __init__(
        self,
        session: requests.Session | None = None,
        *,
        profile: TransportProfile = DEFAULT_PROFILE,
        max_attempts: int = 3,
        backoff_s: float = 0.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.profile = profile
        self.session = session or build_session(profile)
        self.max_attempts = max(1, int(max_attempts))
        self.backoff_s = backoff_s
        self._sleep = sleep

    def close(self) -> None:
        self.session.close()

    def _attempt(
        self, uri: str, partial: Path, credential: ClientCredential | None
    ) -> None:
        kwargs: dict = {"stream": True, "timeout": self.profile.timeout_s}
        if not self.profile.verify:
            kwargs["verify"] = False
        if credential is not None:
            kwargs["cert"] = credential.as_requests_cert()
        with self.session.get(uri, **kwargs) as resp:
            resp.raise_for_status()
            with partial.open("wb") as fh:
                for chunk in resp.iter_content(CHUNK_SIZE):
                    if chunk:
                        fh.write(chunk)

    def fetch(
        self,
        uri: str,
        destination: str | Path,
        max_attempts: int | None = None,
        credential: ClientCredential | None = None,
    ) -> Path:
        """Download ``uri`` to ``destination`` and return the destination.

        The body lands in a uniquely named ``.part`` sibling first and is moved
        into place with ``os.replace`` once complete, so readers never see a
        truncated file.
        Raises ``FetchError`` after the last failed attempt; nothing is left
        behind in that case.
        """
        attempts = max(1, int(max_attempts or self.max_attempts))
        target = Path(destination)
        target.parent.mkdir(parents=True, exist_ok=True)
        last_error: str | None = None
        for attempt in range(1, attempts + 1):
            partial = _partial_path(target)
            try:
                self._attempt(uri, partial, credential)
                os.chmod(partial, PUBLISHED_MODE)
                os.replace(partial, target)
            except (requests.RequestException, OSError) as exc:
                _discard(partial)
                last_error = f"{type(exc).__name__}: {exc}"
                log.warning(
                    "fetcher.attempt_failed uri=%s attempt=%s/%s error=%s",
                    uri,
                    attempt,
                    attempts,
                    last_error,
                )
                if attempt < attempts:
                    delay = backoff_delay(attempt, base=self.backoff_s)
                    if delay > 0:
                        self._sleep(delay)
                continue
            log.info(
                "fetcher.fetched uri=%s dest=%s attempt=%s bytes=%s",
                uri,
                target,
                attempt,
                target.stat().st_size,
            )
            return target

        raise FetchError(uri, attempts, last_error)
