import os
from pathlib import Path

import yaml

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "config" / "config.yaml"

DEFAULT_REDIRECT_URI = "http://localhost:8090/callback"
DEFAULT_SCOPE = ["activity:read_all", "profile:read_all"]
DEFAULT_REQUEST_TIMEOUT_S = 20


def _expand(value):
    """Recursively expand ~ and env vars in string values."""
    if isinstance(value, str):
        return os.path.expandvars(os.path.expanduser(value))
    if isinstance(value, dict):
        return {k: _expand(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand(v) for v in value]
    return value


def load_config(path=None):
    """Load YAML config, expanding ~ and $ENV_VARS in all string values."""
    path = Path(path) if path else DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with open(path) as f:
        raw = yaml.safe_load(f) or {}
    return _expand(raw)


def _unexpanded(value) -> bool:
    return not value or (isinstance(value, str) and value.startswith("$"))


def strava_settings(config: dict | None) -> dict:
    """Resolve Strava app settings, falling back to STRAVA_* env vars.

    An unset env var survives expandvars as a literal "$NAME"; treat that as missing.
    """
    strava_cfg = dict((config or {}).get("strava") or {})

    client_id = strava_cfg.get("client_id")
    if _unexpanded(client_id):
        client_id = os.environ.get("STRAVA_CLIENT_ID")
    client_secret = strava_cfg.get("client_secret")
    if _unexpanded(client_secret):
        client_secret = os.environ.get("STRAVA_CLIENT_SECRET")

    return {
        "client_id": int(client_id) if client_id else None,
        "client_secret": client_secret or None,
        "redirect_uri": strava_cfg.get("redirect_uri") or DEFAULT_REDIRECT_URI,
        "scope": strava_cfg.get("scope") or list(DEFAULT_SCOPE),
        "request_timeout_s": float(strava_cfg.get("request_timeout_s") or DEFAULT_REQUEST_TIMEOUT_S),
    }


def sync_settings(config: dict | None) -> dict:
    sync_cfg = (config or {}).get("sync") or {}
    return {
        "lookback_days": int(sync_cfg.get("lookback_days", 365)),
        "per_page": int(sync_cfg.get("per_page", 100)),
    }
