from .errors import (
    ConfigError,
    FetchError,
    InventoryError,
    ManifestParseError,
    MirrorError,
    PersistError,
)
from .config import MirrorConfig, load_config
from .credentials import ClientCredential, select_client_credential
from .fetcher import RetryingFetcher
from .integrity import Mismatch, Verified, verify
from .inventory import Device, load_inventory
from .manifest import FileEntry, ManifestDocument, persist, resolve, rewrite_destination
from .sync import DeviceResult, MirrorSync, SyncReport, build_manifest_uri

__all__ = [
    "ClientCredential",
    "ConfigError",
    "Device",
    "DeviceResult",
    "FetchError",
    "FileEntry",
    "InventoryError",
    "ManifestDocument",
    "ManifestParseError",
    "MirrorConfig",
    "MirrorError",
    "MirrorSync",
    "Mismatch",
    "PersistError",
    "RetryingFetcher",
    "SyncReport",
    "Verified",
    "build_manifest_uri",
    "load_config",
    "load_inventory",
    "persist",
    "resolve",
    "rewrite_destination",
    "select_client_credential",
    "verify",
]
