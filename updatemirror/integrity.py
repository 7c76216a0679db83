from __future__ import annotations

from dataclasses import dataclass
import hashlib
import logging
from pathlib import Path
from typing import Union

log = logging.getLogger("updatemirror.integrity")

CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True)
class Verified:
    path: Path
    digest: str


@dataclass(frozen=True)
class Mismatch:
    path: Path
    expected: str
    actual: str | None


VerifyResult = Union[Verified, Mismatch]


def md5_file(path: str | Path) -> str:
    # MD5 is what the upstream manifests carry; it is an interoperability check only.
    digest = hashlib.md5(usedforsecurity=False)
    with Path(path).open("rb") as fh:
        while chunk := fh.read(CHUNK_SIZE):
            digest.update(chunk)
    return digest.hexdigest()


def verify(path: str | Path, expected_hash: str) -> VerifyResult:
    target = Path(path)
    expected = (expected_hash or "").strip().lower()
    try:
        actual = md5_file(target)
    except FileNotFoundError:
        log.warning("integrity.missing path=%s", target)
        return Mismatch(path=target, expected=expected, actual=None)

    if expected and actual == expected:
        return Verified(path=target, digest=actual)

    target.unlink(missing_ok=True)
    log.warning(
        "integrity.mismatch path=%s expected=%s actual=%s action=deleted",
        target,
        expected or "<none>",
        actual,
    )
    return Mismatch(path=target, expected=expected, actual=actual)
