"""Load the mountain pass catalog from YAML."""

import logging
from pathlib import Path

import yaml

from passbase.models import MountainPass

log = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent.parent / "config" / "passes.yaml"


def get_catalog_path(config=None):
    if config and "paths" in config and "catalog" in config["paths"]:
        path = Path(config["paths"]["catalog"])
        if not path.is_absolute():
            path = DEFAULT_CATALOG_PATH.parent.parent / path
        return path
    return DEFAULT_CATALOG_PATH


def parse_catalog(raw) -> list[MountainPass]:
    """Build MountainPass records from the parsed YAML, keeping file order."""
    entries = raw.get("passes", []) if isinstance(raw, dict) else raw or []
    passes = []
    seen = set()
    for i, entry in enumerate(entries):
        pass_id = str(entry.get("id") or "").strip()
        if not pass_id:
            raise ValueError(f"Catalog entry {i} has no id")
        if pass_id in seen:
            raise ValueError(f"Duplicate pass id in catalog: {pass_id}")
        lat, lng = float(entry["lat"]), float(entry["lng"])
        if not (-90 <= lat <= 90 and -180 <= lng <= 180):
            raise ValueError(f"Pass {pass_id} has invalid coordinates ({lat}, {lng})")
        seen.add(pass_id)
        passes.append(MountainPass(
            id=pass_id,
            name=entry.get("name") or pass_id,
            lat=lat,
            lng=lng,
            country=entry.get("country"),
            region=entry.get("region"),
            max_altitude_m=entry.get("max_altitude_m"),
            category=entry.get("category"),
        ))
    return passes


def load_catalog_file(path=None) -> list[MountainPass]:
    path = Path(path) if path else DEFAULT_CATALOG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Pass catalog not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    passes = parse_catalog(raw)
    log.info("Loaded %d passes from %s", len(passes), path)
    return passes
