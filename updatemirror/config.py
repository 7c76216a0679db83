from __future__ import annotations

from dataclasses import dataclass
import hashlib
import json
import os
from pathlib import Path
from typing import Any, Mapping

from updatemirror.errors import ConfigError

DEFAULT_MANIFEST_SERVER = "update-manifests.sco.cisco.com"
DEFAULT_TRUSTED_ISSUER = "CN=Cisco Appliance Update CA,O=Cisco Systems"
DEFAULT_RETRIES = 3
VALID_MODES = frozenset({"update", "upgrade"})

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class MirrorConfig:
    update_server: str
    manifest_server: str = DEFAULT_MANIFEST_SERVER
    retries: int = DEFAULT_RETRIES
    mode: str = "update"
    log_enabled: bool = True
    log_level: str = "INFO"
    base_path: Path = Path("mirror")
    publish_root: Path = Path("mirror/publish")
    cert_store: Path = Path("mirror/certs")
    trusted_issuer: str = DEFAULT_TRUSTED_ISSUER
    timeout_s: float = 30.0
    backoff_s: float = 0.0
    workers: int = 1
    require_client_cert: bool = False
    legacy_tls: bool = True

    @property
    def manifest_cache_dir(self) -> Path:
        return self.base_path / "manifests"

    def validate(self) -> "MirrorConfig":
        if not self.update_server.strip():
            raise ConfigError("UM_UPDATE_SERVER is required (distribution server address)")
        if not self.manifest_server.strip():
            raise ConfigError("UM_MANIFEST_SERVER must not be empty")
        if self.mode not in VALID_MODES:
            raise ConfigError(f"UM_MODE must be one of {sorted(VALID_MODES)}, got {self.mode!r}")
        if self.retries < 1:
            raise ConfigError("UM_RETRIES must be >= 1")
        if self.workers < 1:
            raise ConfigError("UM_WORKERS must be >= 1")
        if self.timeout_s <= 0:
            raise ConfigError("UM_TIMEOUT_SECONDS must be > 0")
        if self.backoff_s < 0:
            raise ConfigError("UM_BACKOFF_SECONDS must be >= 0")
        return self


def _flag(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUTHY


def _number(name: str, raw: Any, cast):
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name} must be numeric, got {raw!r}") from exc


def load_config(overrides: Mapping[str, Any] | None = None) -> MirrorConfig:
    """Build the run configuration from ``UM_*`` variables.

    ``overrides`` holds already-parsed CLI values keyed by field name; ``None``
    entries are ignored so unset flags fall back to the environment.
    """
    given = {k: v for k, v in (overrides or {}).items() if v is not None}

    def pick(field: str, env: str, default: Any) -> Any:
        if field in given:
            return given[field]
        return os.getenv(env, default)

    base_path = Path(pick("base_path", "UM_BASE_PATH", "mirror"))
    publish_root = pick("publish_root", "UM_PUBLISH_ROOT", None)
    cert_store = pick("cert_store", "UM_CERT_STORE", None)

    cfg = MirrorConfig(
        update_server=str(pick("update_server", "UM_UPDATE_SERVER", "")).strip(),
        manifest_server=str(
            pick("manifest_server", "UM_MANIFEST_SERVER", DEFAULT_MANIFEST_SERVER)
        ).strip(),
        retries=_number("UM_RETRIES", pick("retries", "UM_RETRIES", DEFAULT_RETRIES), int),
        mode=str(pick("mode", "UM_MODE", "update")).strip().lower(),
        log_enabled=_flag(pick("log_enabled", "UM_LOG_ENABLED", "1")),
        log_level=str(pick("log_level", "UM_LOG_LEVEL", "INFO")).strip().upper(),
        base_path=base_path,
        publish_root=Path(publish_root) if publish_root else base_path / "publish",
        cert_store=Path(cert_store) if cert_store else base_path / "certs",
        trusted_issuer=str(
            pick("trusted_issuer", "UM_TRUSTED_ISSUER", DEFAULT_TRUSTED_ISSUER)
        ).strip(),
        timeout_s=_number(
            "UM_TIMEOUT_SECONDS", pick("timeout_s", "UM_TIMEOUT_SECONDS", "30"), float
        ),
        backoff_s=_number(
            "UM_BACKOFF_SECONDS", pick("backoff_s", "UM_BACKOFF_SECONDS", "0"), float
        ),
        workers=_number("UM_WORKERS", pick("workers", "UM_WORKERS", "1"), int),
        require_client_cert=_flag(
            pick("require_client_cert", "UM_REQUIRE_CLIENT_CERT", "0")
        ),
        legacy_tls=_flag(pick("legacy_tls", "UM_LEGACY_TLS", "1")),
    )
    return cfg.validate()


def config_fingerprint(cfg: MirrorConfig) -> str:
    stable = {
        "manifest_server": cfg.manifest_server,
        "mode": cfg.mode,
        "retries": cfg.retries,
        "update_server": cfg.update_server,
        "workers": cfg.workers,
    }
    return hashlib.sha256(
        json.dumps(stable, sort_keys=True, separators=(",", ":")).encode("utf-8")
    ).hexdigest()[:16]
