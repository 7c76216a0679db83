"""
updatemirror/manifest.py - appliance update manifests.

Manifest layout::

    <manifest>
      <application name="...">
        <component name="...">
          <file scheme="https" server="..." path="..." version="..." md5="..."/>
        </component>
      </application>
    </manifest>

The parsed tree is owned by ``ManifestDocument``. Rewrites mutate it in place
through ``rewrite_destination``; ``persist`` is the only way it is rendered.
Everything not explicitly rewritten (element order, unknown attributes, text,
comments and processing instructions, including those around the root element)
survives the round trip. Namespaced manifests are rejected.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path, PurePosixPath
from urllib.parse import unquote
import xml.etree.ElementTree as ET

from updatemirror.errors import ManifestParseError, PersistError

log = logging.getLogger("updatemirror.manifest")

APPLICATION_TAG = "application"
COMPONENT_TAG = "component"
FILE_TAG = "file"

REQUIRED_FILE_ATTRS = ("scheme", "server", "path", "version")
SERVER_ATTR = "server"
SECONDARY_SERVER_ATTR = "secondary_server"
HASH_ATTR = "md5"


@dataclass
class FileEntry:
    element: ET.Element
    application: str
    component: str

    @property
    def scheme(self) -> str:
        return self.element.get("scheme", "")

    @property
    def server(self) -> str:
        return self.element.get(SERVER_ATTR, "")

    @property
    def secondary_server(self) -> str | None:
        return self.element.get(SECONDARY_SERVER_ATTR)

    @property
    def path(self) -> str:
        return self.element.get("path", "")

    @property
    def version(self) -> str:
        return self.element.get("version", "")

    @property
    def expected_hash(self) -> str:
        return self.element.get(HASH_ATTR, "")

    @property
    def source_uri(self) -> str:
        return f"{self.scheme}://{self.server}/{self.path.lstrip('/')}"

    def destination(self, publish_root: str | Path) -> Path:
        """Local path for this file: ``<root>/<decoded path dir>/<version>``."""
        directory = PurePosixPath(unquote(self.path).lstrip("/")).parent
        token = self.version
        if (
            ".." in directory.parts
            or not token
            or token in {".", ".."}
            or "/" in token
            or "\\" in token
        ):
            raise ManifestParseError(
                f"file entry escapes the publish tree path={self.path!r} version={token!r}"
            )
        return Path(publish_root).joinpath(*directory.parts, token)


@dataclass
class ManifestDocument:
    root: ET.Element
    entries: list[FileEntry]
    prolog: list[ET.Element] = field(default_factory=list)
    epilog: list[ET.Element] = field(default_factory=list)

    def rewrite_all(self, server: str) -> None:
        for entry in self.entries:
            rewrite_destination(entry, server)


def _parse_tree(raw: bytes) -> ET.Element:
    parser = ET.XMLParser(target=ET.TreeBuilder(insert_comments=True, insert_pis=True))
    try:
        return ET.fromstring(raw, parser=parser)
    except ET.ParseError as exc:
        raise ManifestParseError(f"manifest is not well-formed XML: {exc}") from exc


def _outer_nodes(raw: bytes) -> tuple[list[ET.Element], list[ET.Element]]:
    """Comments and processing instructions before and after the root element."""
    parser = ET.XMLPullParser(events=("start", "end", "comment", "pi"))
    parser.feed(raw)
    parser.close()
    before: list[ET.Element] = []
    after: list[ET.Element] = []
    depth = 0
    seen_root = False
    for event, node in parser.read_events():
        if event == "start":
            depth += 1
            seen_root = True
        elif event == "end":
            depth -= 1
        elif depth == 0:
            (after if seen_root else before).append(node)
    return before, after


def resolve(raw: bytes) -> ManifestDocument:
    """Parse a manifest and collect its file entries in document order."""
    root = _parse_tree(raw)
    if any(isinstance(el.tag, str) and el.tag.startswith("{") for el in root.iter()):
        raise ManifestParseError(f"namespaced manifests are not supported root={root.tag}")

    entries: list[FileEntry] = []
    for app in root.findall(APPLICATION_TAG):
        for component in app.findall(COMPONENT_TAG):
            for element in component.findall(FILE_TAG):
                missing = [a for a in REQUIRED_FILE_ATTRS if not element.get(a)]
                if missing:
                    raise ManifestParseError(
                        f"file entry missing {','.join(missing)} "
                        f"application={app.get('name', '')} component={component.get('name', '')}"
                    )
                entries.append(
                    FileEntry(
                        element=element,
                        application=app.get("name", ""),
                        component=component.get("name", ""),
                    )
                )

    stray = sum(1 for _ in root.iter(FILE_TAG)) - len(entries)
    if stray:
        raise ManifestParseError(
            f"{stray} file entr{'y' if stray == 1 else 'ies'} outside application/component nesting"
        )
    prolog, epilog = _outer_nodes(raw)
    return ManifestDocument(root=root, entries=entries, prolog=prolog, epilog=epilog)


def rewrite_destination(entry: FileEntry, new_server: str) -> None:
    entry.element.set(SERVER_ATTR, new_server)
    if entry.secondary_server is not None:
        entry.element.set(SECONDARY_SERVER_ATTR, new_server)


def render(document: ManifestDocument) -> bytes:
    parts = ["<?xml version='1.0' encoding='utf-8'?>\n"]
    parts.extend(ET.tostring(node, encoding="unicode") + "\n" for node in document.prolog)
    parts.append(ET.tostring(document.root, encoding="unicode"))
    parts.extend("\n" + ET.tostring(node, encoding="unicode") for node in document.epilog)
    return "".join(parts).encode("utf-8")


def persist(document: ManifestDocument, output_path: str | Path) -> Path:
    target = Path(output_path)
    tmp = target.with_name(target.name + ".tmp")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp.write_bytes(render(document))
        os.replace(tmp, target)
    except OSError as exc:
        try:
            tmp.unlink(missing_ok=True)
        except OSError as cleanup_exc:
            log.debug("manifest.tmp_cleanup_failed path=%s error=%s", tmp, cleanup_exc)
        raise PersistError(f"could not write manifest {target}: {exc}") from exc
    log.info("manifest.persisted path=%s files=%s", target, len(document.entries))
    return target
