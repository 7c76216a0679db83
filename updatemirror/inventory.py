from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from updatemirror.errors import InventoryError

log = logging.getLogger("updatemirror.inventory")


class Device(BaseModel):
    """One appliance from the inventory; never mutated during a run."""

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    type_tag: str = Field(default="serial", alias="type", min_length=1)
    serial: str = Field(min_length=1)
    model: str = Field(min_length=1)
    version: str = Field(min_length=1)
    apps: tuple[str, ...] = ()

    @field_validator("apps")
    @classmethod
    def _apps_non_empty(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        cleaned = tuple(app.strip() for app in value)
        if any(not app for app in cleaned):
            raise ValueError("application names must be non-empty")
        return cleaned


class Inventory(BaseModel):
    model_config = ConfigDict(extra="forbid")

    devices: list[Device]


def parse_inventory(payload: object) -> list[Device]:
    if isinstance(payload, list):
        payload = {"devices": payload}
    try:
        return Inventory.model_validate(payload).devices
    except ValidationError as exc:
        raise InventoryError(f"inventory schema violation: {exc.error_count()} error(s)\n{exc}") from exc


def load_inventory(path: str | Path) -> list[Device]:
    inventory_path = Path(path)
    try:
        payload = json.loads(inventory_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise InventoryError(f"inventory not found: {inventory_path}") from exc
    except (OSError, json.JSONDecodeError) as exc:
        raise InventoryError(f"inventory unreadable: {inventory_path}: {exc}") from exc

    devices = parse_inventory(payload)
    log.info("inventory.loaded path=%s devices=%s", inventory_path, len(devices))
    return devices
