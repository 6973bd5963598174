# quorum/config.py
import os
import copy

import yaml
from dotenv import load_dotenv


# ----------------------------
# Defaults
# ----------------------------

DEFAULT_CONFIG = {
    "backend": {
        "api_base": None,          # discussion backend; None = in-memory stores
        "timeout_sec": 20,
    },
    "pipeline": {
        # seconds between consecutive stages (first entry is relative to start)
        "stage_delays": [1.2, 2.4, 2.4, 2.4, 2.4],
        "delay_scale": 1.0,
        "roster_size": 4,
        "run_timeout": 120,
    },
    "registry": {
        "max_runs": 500,
    },
    "live": {
        "push_enabled": True,
        "poll_interval": 12.0,
    },
    "logging": {
        "level": "INFO",
        "run_log_dir": None,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8000,
    },
}


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _merge(base: dict, override: dict) -> dict:
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: str = "config.yaml") -> dict:
    """
    Load configuration from config.yaml and apply environment variable overrides.
    Configuration hierarchy (highest to lowest precedence):
    1. Environment variables (QUORUM_*)
    2. .env file
    3. config.yaml
    4. DEFAULT_CONFIG
    """
    # Load .env file if it exists (does not override existing env vars)
    load_dotenv(override=False)

    cfg = copy.deepcopy(DEFAULT_CONFIG)
    if path and os.path.isfile(path):
        with open(path, "r", encoding="utf-8") as f:
            _merge(cfg, yaml.safe_load(f) or {})

    # Apply environment variable overrides
    cfg["backend"]["api_base"] = os.getenv(
        "QUORUM_API_BASE",
        cfg["backend"]["api_base"]
    )
    if cfg["backend"]["api_base"]:
        cfg["backend"]["api_base"] = cfg["backend"]["api_base"].rstrip("/")
    cfg["pipeline"]["delay_scale"] = float(os.getenv(
        "QUORUM_STAGE_DELAY_SCALE",
        cfg["pipeline"].get("delay_scale", 1.0)
    ))
    cfg["pipeline"]["run_timeout"] = float(os.getenv(
        "QUORUM_RUN_TIMEOUT",
        cfg["pipeline"].get("run_timeout", 120)
    ))
    cfg["live"]["poll_interval"] = float(os.getenv(
        "QUORUM_POLL_INTERVAL",
        cfg["live"].get("poll_interval", 12.0)
    ))
    cfg["live"]["push_enabled"] = _as_bool(os.getenv(
        "QUORUM_PUSH_ENABLED",
        cfg["live"].get("push_enabled", True)
    ))
    cfg["registry"]["max_runs"] = int(os.getenv(
        "QUORUM_MAX_RUNS",
        cfg["registry"].get("max_runs", 500)
    ))
    cfg["logging"]["level"] = os.getenv(
        "QUORUM_LOG_LEVEL",
        cfg["logging"].get("level", "INFO")
    ).upper()

    return cfg


def stage_delays(cfg: dict) -> list:
    """Per-stage delays in seconds, with delay_scale applied."""
    pipeline = cfg.get("pipeline", {})
    scale = float(pipeline.get("delay_scale", 1.0))
    return [float(d) * scale for d in pipeline.get("stage_delays", [])]
