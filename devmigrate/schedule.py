"""Reading device lists from the command line or schedule files."""

from __future__ import annotations

import csv
from pathlib import Path
from typing import List

import yaml

DEVICE_COLUMNS = ("DeviceID", "device_id", "ComputerName", "Name")


def parse_devices(value: str) -> List[str]:
    """Return device ids from a comma-separated list or a schedule file path."""
    path = Path(value).expanduser()
    if path.is_file():
        return load_schedule_file(path)
    return [item.strip() for item in value.split(",") if item.strip()]


def load_schedule_file(path: Path) -> List[str]:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return _load_csv(path)
    if suffix in {".yaml", ".yml"}:
        return _load_yaml(path)
    devices = []
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.split("#", 1)[0].strip()
        if line:
            devices.append(line)
    return devices


def _load_csv(path: Path) -> List[str]:
    with open(path, newline="", encoding="utf-8-sig") as f:
        reader = csv.DictReader(f)
        column = next((c for c in DEVICE_COLUMNS if c in (reader.fieldnames or [])), None)
        if column is None:
            raise ValueError(
                f"{path} has no device column (expected one of {', '.join(DEVICE_COLUMNS)})"
            )
        return [row[column].strip() for row in reader if (row.get(column) or "").strip()]


def _load_yaml(path: Path) -> List[str]:
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or []
    if isinstance(data, dict):
        data = data.get("devices") or []
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of devices or a 'devices' key")
    return [str(item).strip() for item in data if str(item).strip()]
