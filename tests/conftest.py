from __future__ import annotations

import os
from pathlib import Path

import pytest

from updatemirror.config import MirrorConfig


@pytest.fixture(autouse=True)
def _restore_env():
    before = dict(os.environ)
    for key in list(os.environ):
        if key.startswith("UM_"):
            del os.environ[key]
    yield
    os.environ.clear()
    os.environ.update(before)


@pytest.fixture()
def make_config(tmp_path: Path):
    """Factory fixture: a valid config rooted in ``tmp_path``."""

    def _make(**overrides) -> MirrorConfig:
        values = {
            "update_server": "mirror.internal.example",
            "base_path": tmp_path / "mirror",
            "publish_root": tmp_path / "mirror" / "publish",
            "cert_store": tmp_path / "mirror" / "certs",
            "legacy_tls": False,
        }
        values.update(overrides)
        return MirrorConfig(**values).validate()

    return _make
