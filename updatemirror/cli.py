from __future__ import annotations

import argparse
import json
import logging

from updatemirror.config import VALID_MODES, config_fingerprint, load_config
from updatemirror.errors import ConfigError, InventoryError, PersistError
from updatemirror.inventory import load_inventory
from updatemirror.logs import configure_logging
from updatemirror.sync import MirrorSync

log = logging.getLogger("updatemirror.cli")

EXIT_OK = 0
EXIT_DEVICE_FAILURES = 1
EXIT_CONFIG = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="updatemirror",
        description="Mirror appliance update manifests and payloads to an internal server",
    )
    parser.add_argument("--inventory", required=True, help="Device inventory JSON file")
    parser.add_argument("--update-server", dest="update_server", help="Internal distribution server address")
    parser.add_argument("--manifest-server", dest="manifest_server", help="Upstream manifest server hostname")
    parser.add_argument("--retries", type=int, help="Attempts per manifest and per file")
    parser.add_argument("--mode", choices=sorted(VALID_MODES), help="update (hash checked) or upgrade")
    parser.add_argument("--base-path", dest="base_path", help="Working directory for manifests and certs")
    parser.add_argument("--publish-root", dest="publish_root", help="Directory served to appliances")
    parser.add_argument("--cert-store", dest="cert_store", help="Directory holding client certificates")
    parser.add_argument("--workers", type=int, help="Devices processed in parallel")
    parser.add_argument(
        "--require-client-cert",
        dest="require_client_cert",
        action="store_true",
        default=None,
        help="Skip devices instead of fetching manifests without a client certificate",
    )
    parser.add_argument(
        "--no-log",
        dest="log_enabled",
        action="store_false",
        default=None,
        help="Disable logging",
    )
    parser.add_argument("--json", action="store_true", help="Print the run summary as JSON")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {
        key: value
        for key, value in vars(args).items()
        if key not in {"inventory", "json"}
    }

    try:
        config = load_config(overrides)
    except ConfigError as exc:
        print(f"FAIL {exc.code}: {exc}")
        return EXIT_CONFIG

    configure_logging(config.log_enabled, config.log_level)
    log.info(
        "cli.start mode=%s manifest_server=%s update_server=%s config=%s",
        config.mode,
        config.manifest_server,
        config.update_server,
        config_fingerprint(config),
    )

    try:
        devices = load_inventory(args.inventory)
        sync = MirrorSync(config)
    except (InventoryError, ConfigError) as exc:
        log.error("cli.aborted code=%s error=%s", exc.code, exc)
        return EXIT_CONFIG

    try:
        report = sync.run(devices)
    except (PersistError, ConfigError) as exc:
        log.error("cli.aborted code=%s error=%s", exc.code, exc)
        return EXIT_CONFIG
    finally:
        sync.close()

    if args.json:
        print(json.dumps(report.summary(), sort_keys=True, separators=(",", ":")))
    return EXIT_OK if report.ok else EXIT_DEVICE_FAILURES


if __name__ == "__main__":
    raise SystemExit(main())
