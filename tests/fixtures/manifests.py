from __future__ import annotations

import hashlib
from xml.sax.saxutils import quoteattr

UPSTREAM = "downloads.example.com"


def md5(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def file_xml(**attrs: str) -> str:
    rendered = " ".join(f"{key}={quoteattr(value)}" for key, value in attrs.items())
    return f"<file {rendered}/>"


def build_manifest(components: dict[tuple[str, str], list[dict[str, str]]]) -> bytes:
    """Render ``{(application, component): [file attrs, ...]}`` as manifest XML."""
    apps: dict[str, list[str]] = {}
    for (app, component), files in components.items():
        body = "".join(f"\n      {file_xml(**attrs)}" for attrs in files)
        apps.setdefault(app, []).append(
            f'\n    <component name="{component}">{body}\n    </component>'
        )
    rendered = "".join(
        f'\n  <application name="{app}">{"".join(parts)}\n  </application>'
        for app, parts in apps.items()
    )
    return f'<?xml version="1.0" encoding="UTF-8"?>\n<manifest>{rendered}\n</manifest>\n'.encode("utf-8")


def file_attrs(path: str, version: str, content: bytes, **extra: str) -> dict[str, str]:
    attrs = {
        "scheme": "https",
        "server": UPSTREAM,
        "path": path,
        "version": version,
        "md5": md5(content),
    }
    attrs.update(extra)
    return attrs
