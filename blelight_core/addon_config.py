from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import yaml

logger = logging.getLogger(__name__)

# Public module-level handles; populated by init_config()
CONFIG: dict[str, Any] = {}
CONFIG_SOURCE: Path | None = None

DEFAULTS: dict[str, Any] = {
    "MQTT_URL": "mqtt://localhost:1883",
    "MQTT_USERNAME": None,
    "MQTT_PASSWORD": None,
    "MQTT_CLIENT_ID": "blelight-bridge",
    "MQTT_BASE": "blelight",
    "DISCOVERY_PREFIX": "homeassistant",
    "DEVICE_IDS": [],
    "BLE_ADAPTER": None,
    "SCAN_TIMEOUT": 10.0,
    "MANUFACTURER": "BLE Light",
    "LOG_LEVEL": "INFO",
}

# Environment variables are read for these keys only
ENV_KEYS = tuple(DEFAULTS) + ("LOG_PATH",)


def _candidate_paths() -> list[Path]:
    """Ordered YAML config locations (explicit env path first)."""
    env_path = os.environ.get("CONFIG_PATH")
    paths: list[Path] = []
    if env_path:
        paths.append(Path(env_path))
    paths.extend(
        [
            Path("/data/config.yaml"),  # HA add-on standard
            Path("/config/config.yaml"),
            Path(__file__).parent / "config.yaml",
        ]
    )
    return paths


def _load_options_json(
    path: Path = Path("/data/options.json"),
) -> tuple[dict[str, Any], Path | None]:
    """
    Load Home Assistant add-on options (JSON). Returns (data, source_path).
    """
    if not path.exists():
        logger.debug("[CONFIG] options.json not found: %s", path)
        return {}, None
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        logger.warning("[CONFIG] Failed to parse options.json %s: %s", path, exc)
        return {}, None
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("[CONFIG] Failed to read options.json %s: %s", path, exc)
        return {}, None
    if not isinstance(data, dict):
        logger.warning("[CONFIG] options.json root not a mapping: %s", path)
        return {}, None
    logger.info("[CONFIG] Loaded options from: %s", path)
    return data, path


def _load_yaml_cfg(
    paths: list[Path] | None = None,
) -> tuple[dict[str, Any], Path | None]:
    """
    Load YAML config from the first valid candidate path.
    Returns (data, source_path). Empty dict if none valid.
    """
    for pth in paths or _candidate_paths():
        if not pth.exists():
            logger.debug("[CONFIG] Path not found: %s", pth)
            continue
        try:
            with pth.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh)
        except yaml.YAMLError as exc:
            logger.warning("[CONFIG] Failed to parse YAML %s: %s", pth, exc)
            continue
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("[CONFIG] Failed to read YAML %s: %s", pth, exc)
            continue
        if not isinstance(data, dict):
            logger.warning("[CONFIG] YAML root not a mapping: %s", pth)
            continue
        logger.info("[CONFIG] Loaded YAML config from: %s", pth)
        return data, pth
    return {}, None


def _load_env() -> dict[str, Any]:
    return {k: os.environ[k] for k in ENV_KEYS if os.environ.get(k)}


def init_config() -> tuple[dict[str, Any], Path | None]:
    """Populate module-level CONFIG & CONFIG_SOURCE and return them.

    Precedence (later wins): defaults, YAML, /data/options.json, env.
    Keys are upper-cased so options.json may use lower-case names.
    """
    global CONFIG_SOURCE
    yml, yml_src = _load_yaml_cfg(_candidate_paths())
    opts, opts_src = _load_options_json()

    merged: dict[str, Any] = dict(DEFAULTS)
    for layer in (yml, opts, _load_env()):
        merged.update({str(k).upper(): v for k, v in layer.items()})

    CONFIG.clear()
    CONFIG.update(merged)
    CONFIG_SOURCE = opts_src or yml_src
    logger.debug("[CONFIG] Active source: %s", CONFIG_SOURCE or "defaults/env")
    return CONFIG, CONFIG_SOURCE


def load_config(force: bool = False) -> tuple[dict[str, Any], Path | None]:
    """
    Produce the effective configuration, cached after the first call.
    Returns (config_dict, primary_source_path).
    """
    if CONFIG and not force:
        return CONFIG, CONFIG_SOURCE
    return init_config()


def device_ids(cfg: dict[str, Any]) -> list[str]:
    """Allow-list of device ids; empty means discovery mode."""
    raw = cfg.get("DEVICE_IDS") or []
    if isinstance(raw, str):
        raw = raw.split(",")
    return [str(i).strip() for i in raw if str(i).strip()]


def parse_broker_url(url: str) -> tuple[str, int, bool]:
    """Split ``mqtt://host:port`` into (host, port, tls).

    ``mqtts://`` enables TLS and defaults to port 8883; a bare host is
    accepted too.
    """
    if "://" not in url:
        url = f"mqtt://{url}"
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    if scheme not in ("mqtt", "mqtts", "tcp", "ssl"):
        raise ValueError(f"Unsupported broker URL scheme: {parts.scheme!r}")
    tls = scheme in ("mqtts", "ssl")
    port = parts.port or (8883 if tls else 1883)
    return parts.hostname or "localhost", port, tls


def broker_credentials(cfg: dict[str, Any]) -> tuple[str | None, str | None]:
    """Username/password from config; URL userinfo is used as a fallback."""
    parts = urlsplit(str(cfg.get("MQTT_URL") or ""))
    username = cfg.get("MQTT_USERNAME") or parts.username
    password = cfg.get("MQTT_PASSWORD") or parts.password
    return username, password


__all__ = [
    "CONFIG",
    "CONFIG_SOURCE",
    "DEFAULTS",
    "broker_credentials",
    "device_ids",
    "init_config",
    "load_config",
    "parse_broker_url",
]
