"""
updatemirror/sync.py - fleet synchronisation.

Per device:
  BuildManifestURI -> FetchManifest -> ResolveManifest
  -> {FetchFile -> VerifyOrSkip}* -> Rewrite -> PersistManifest

Failure isolation:
  - Manifest fetch, manifest parse and persist failures end the device; the
    next device still runs.
  - A single file that cannot be fetched or fails its hash check is recorded
    and the remaining files continue. The manifest is still published.
  - Only configuration and directory bootstrap errors stop the whole run.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
import logging
from pathlib import Path
import threading
from typing import Callable, Iterable
from urllib.parse import urlencode

from updatemirror.config import MirrorConfig
from updatemirror.credentials import ClientCredential, select_client_credential
from updatemirror.errors import FetchError, MirrorError, PersistError
from updatemirror.fetcher import RetryingFetcher
from updatemirror.integrity import Mismatch, verify
from updatemirror.inventory import Device
from updatemirror.manifest import FileEntry, persist, resolve
from updatemirror.transport import DEFAULT_PROFILE, LEGACY_PROFILE

log = logging.getLogger("updatemirror.sync")

UPGRADE_APPLICATION = "asyncos"

STATUS_OK = "ok"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


def build_manifest_uri(device: Device, mode: str, server: str) -> str:
    apps = UPGRADE_APPLICATION if mode == "upgrade" else ",".join(device.apps)
    query = urlencode(
        [
            (device.type_tag, device.serial),
            ("model", device.model),
            ("apps", apps),
            ("release_tag", device.version),
        ],
        safe=",",
    )
    return f"https://{server}/fetch_manifest?{query}"


def manifest_cache_path(config: MirrorConfig, device: Device) -> Path:
    return config.manifest_cache_dir / f"{device.model}.{device.version}.{config.mode}_manifest.xml"


def published_manifest_path(config: MirrorConfig, device: Device) -> Path:
    return config.publish_root / f"{device.serial}_{config.mode}.xml"


@dataclass
class DeviceResult:
    serial: str
    status: str = STATUS_OK
    reason: str = ""
    manifest_path: Path | None = None
    fetched: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    mismatched: list[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.status == STATUS_OK and not self.failed and not self.mismatched


@dataclass
class SyncReport:
    mode: str
    results: list[DeviceResult] = field(default_factory=list)

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def ok(self) -> bool:
        return all(r.status == STATUS_OK for r in self.results)

    def summary(self) -> dict:
        return {
            "mode": self.mode,
            "devices": len(self.results),
            "ok": self.count(STATUS_OK),
            "failed": self.count(STATUS_FAILED),
            "skipped": self.count(STATUS_SKIPPED),
            "files_fetched": sum(len(r.fetched) for r in self.results),
            "files_failed": sum(len(r.failed) for r in self.results),
            "files_mismatched": sum(len(r.mismatched) for r in self.results),
            "devices_failed": [
                {"serial": r.serial, "status": r.status, "reason": r.reason}
                for r in self.results
                if r.status != STATUS_OK
            ],
        }


class _PathLocks:
    """One lock per output path, so parallel devices sharing a file or a
    cached manifest never interleave writes and reads on it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}

    def __call__(self, path: Path) -> threading.Lock:
        key = Path(path).resolve()
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())


class MirrorSync:
    def __init__(
        self,
        config: MirrorConfig,
        *,
        manifest_fetcher: RetryingFetcher | None = None,
        file_fetcher: RetryingFetcher | None = None,
        credential_loader: Callable[[], ClientCredential | None] | None = None,
    ):
        self.config = config
        manifest_profile = LEGACY_PROFILE if config.legacy_tls else DEFAULT_PROFILE
        self.manifest_fetcher = manifest_fetcher or RetryingFetcher(
            profile=replace(manifest_profile, timeout_s=config.timeout_s),
            max_attempts=config.retries,
            backoff_s=config.backoff_s,
        )
        self.file_fetcher = file_fetcher or RetryingFetcher(
            profile=replace(DEFAULT_PROFILE, timeout_s=config.timeout_s),
            max_attempts=config.retries,
            backoff_s=config.backoff_s,
        )
        self.credential_loader = credential_loader or (
            lambda: select_client_credential(config.cert_store, config.trusted_issuer)
        )
        self._locks = _PathLocks()

    def close(self) -> None:
        self.manifest_fetcher.close()
        self.file_fetcher.close()

    def prepare(self) -> None:
        for directory in (self.config.manifest_cache_dir, self.config.publish_root):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise PersistError(f"could not create directory {directory}: {exc}") from exc

    def _fetch_file(self, entry: FileEntry, destination: Path, result: DeviceResult) -> None:
        uri = entry.source_uri
        with self._locks(destination):
            self._fetch_and_verify(entry, uri, destination, result)

    def _fetch_and_verify(
        self, entry: FileEntry, uri: str, destination: Path, result: DeviceResult
    ) -> None:
        try:
            self.file_fetcher.fetch(uri, destination, max_attempts=self.config.retries)
        except FetchError as exc:
            log.error(
                "sync.file_fetch_failed serial=%s uri=%s attempts=%s",
                result.serial,
                uri,
                exc.attempts,
            )
            result.failed.append(uri)
            if self.config.mode != "upgrade" and destination.exists():
                # an earlier copy stays published only while it matches the manifest hash
                verify(destination, entry.expected_hash)
            return
        except OSError as exc:
            log.error("sync.file_write_failed serial=%s dest=%s error=%s", result.serial, destination, exc)
            result.failed.append(uri)
            return

        if self.config.mode == "upgrade":
            result.fetched.append(uri)
            return
        if isinstance(verify(destination, entry.expected_hash), Mismatch):
            result.mismatched.append(uri)
            return
        result.fetched.append(uri)

    def _sync(self, device: Device, credential: ClientCredential | None) -> DeviceResult:
        result = DeviceResult(serial=device.serial)
        uri = build_manifest_uri(device, self.config.mode, self.config.manifest_server)

        if credential is None:
            if self.config.require_client_cert:
                log.warning("sync.device_skipped serial=%s reason=credential_not_found", device.serial)
                result.status = STATUS_SKIPPED
                result.reason = "credential_not_found"
                return result
            log.warning("sync.unauthenticated_manifest_request serial=%s", device.serial)

        cache_path = manifest_cache_path(self.config, device)
        with self._locks(cache_path):
            self.manifest_fetcher.fetch(
                uri, cache_path, max_attempts=self.config.retries, credential=credential
            )
            raw = cache_path.read_bytes()
        document = resolve(raw)
        planned = [(entry, entry.destination(self.config.publish_root)) for entry in document.entries]
        log.info(
            "sync.manifest_resolved serial=%s files=%s mode=%s",
            device.serial,
            len(planned),
            self.config.mode,
        )

        for entry, destination in planned:
            self._fetch_file(entry, destination, result)

        document.rewrite_all(self.config.update_server)
        result.manifest_path = persist(document, published_manifest_path(self.config, device))
        return result

    def sync_device(
        self, device: Device, credential: ClientCredential | None = None
    ) -> DeviceResult:
        try:
            result = self._sync(device, credential)
        except MirrorError as exc:
            log.error("sync.device_failed serial=%s code=%s error=%s", device.serial, exc.code, exc)
            return DeviceResult(serial=device.serial, status=STATUS_FAILED, reason=exc.code)
        except OSError as exc:
            log.error("sync.device_failed serial=%s code=%s error=%s", device.serial, PersistError.code, exc)
            return DeviceResult(serial=device.serial, status=STATUS_FAILED, reason=PersistError.code)
        except Exception as exc:
            log.exception("sync.device_failed serial=%s code=UNEXPECTED", device.serial)
            return DeviceResult(
                serial=device.serial,
                status=STATUS_FAILED,
                reason=f"UNEXPECTED:{type(exc).__name__}",
            )

        log.info(
            "sync.device_done serial=%s status=%s fetched=%s failed=%s mismatched=%s",
            result.serial,
            result.status,
            len(result.fetched),
            len(result.failed),
            len(result.mismatched),
        )
        return result

    def run(self, devices: Iterable[Device]) -> SyncReport:
        self.prepare()
        credential = self.credential_loader()
        devices = list(devices)
        report = SyncReport(mode=self.config.mode)

        if self.config.workers <= 1 or len(devices) <= 1:
            report.results = [self.sync_device(device, credential) for device in devices]
        else:
            with ThreadPoolExecutor(
                max_workers=self.config.workers, thread_name_prefix="updatemirror"
            ) as pool:
                report.results = list(
                    pool.map(lambda device: self.sync_device(device, credential), devices)
                )

        summary = report.summary()
        log.info(
            "sync.complete mode=%s devices=%s ok=%s failed=%s skipped=%s",
            summary["mode"],
            summary["devices"],
            summary["ok"],
            summary["failed"],
            summary["skipped"],
        )
        return report
