"""Structured logging for the bridge.

Log calls pass dicts (``logger.info({"event": "...", ...})``); the
``JsonRedactingHandler`` writes each one as a single JSON line with
credentials masked. Three named loggers are shared across modules:
``logger`` for the process, ``bridge_logger`` for the MQTT side and
``ble_logger`` for the BLE side.
"""

from __future__ import annotations

import atexit
import json
import logging
import os
import pathlib
import re
import sys
import tempfile

# Use shared config
try:
    from .addon_config import load_config

    _cfg, _src = load_config()
except Exception:  # noqa: BLE001
    _cfg, _src = {}, None


REDACT = re.compile(
    r"(?i)[\"']?\b(pass(word)?|token|apikey|api_key|secret|bearer)\b[\"']?\s*[:=]\s*[\"']?([^\"',\s]+)[\"']?"
)


def redact(s: str) -> str:
    return REDACT.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)


class JsonRedactingHandler(logging.StreamHandler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = record.msg
            if isinstance(msg, dict):
                line = json.dumps(
                    {"level": record.levelname, "logger": record.name, **msg},
                    default=str,
                )
            else:
                line = record.getMessage()
            line = redact(line)
            stream = self.stream if hasattr(self, "stream") else sys.stdout
            stream.write(line + "\n")
            self.flush()
        except Exception:  # noqa: BLE001
            self.handleError(record)


LOG_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _get_log_level(override: str | None = None) -> int:
    """Resolve log level from an override, the environment or config.

    The function checks, in order: the override, LOG_LEVEL, LOGGING_LEVEL,
    BLELIGHT_LOG_LEVEL, the config's LOG_LEVEL and falls back to
    logging.INFO for invalid or missing values.
    """
    lvl = (
        override
        or os.environ.get("LOG_LEVEL")
        or os.environ.get("LOGGING_LEVEL")
        or os.environ.get("BLELIGHT_LOG_LEVEL")
        or _cfg.get("LOG_LEVEL")
    )
    if not lvl:
        return logging.INFO
    return LOG_LEVEL_MAP.get(str(lvl).upper(), logging.INFO)


def get_log_level(override: str | None = None) -> int:
    return _get_log_level(override=override)


logger = logging.getLogger(__name__)
bridge_logger = logging.getLogger(f"{__name__}.bridge")
ble_logger = logging.getLogger(f"{__name__}.ble")

handler = JsonRedactingHandler(sys.stdout)
for log in (logger, bridge_logger, ble_logger):
    log.setLevel(_get_log_level())
    log.handlers.clear()  # Deduplicate handlers on re-import
    log.addHandler(handler)
    log.propagate = False
# children write through the package logger's handler
bridge_logger.handlers.clear()
ble_logger.handlers.clear()
bridge_logger.propagate = True
ble_logger.propagate = True


def _flush_all_log_handlers() -> None:
    """Flush every handler of our loggers, skipping closed streams."""
    seen = set()
    for log in (logging.getLogger(), logger, bridge_logger, ble_logger):
        for h in getattr(log, "handlers", []):
            if id(h) in seen:
                continue
            seen.add(id(h))
            stream = getattr(h, "stream", None)
            if getattr(stream, "closed", False) is True:
                continue
            try:
                h.flush()
            except (OSError, ValueError):
                pass


atexit.register(_flush_all_log_handlers)


def _writable(path: str) -> bool:
    try:
        p = pathlib.Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with open(p, "a"):
            pass
        return True
    except OSError:
        return False


def init_file_handler(path: str | None = None) -> logging.Handler:
    """File handler for LOG_PATH (config) or BLELIGHT_LOG_PATH (env).

    Falls back to a file in the temp dir, then to stderr, logging one
    warning when it does.
    """
    candidate = path or _cfg.get("LOG_PATH") or os.environ.get("BLELIGHT_LOG_PATH")
    if candidate and _writable(candidate):
        return JsonRedactingHandler(open(candidate, "a", encoding="utf-8"))  # noqa: SIM115
    tmp = os.path.join(tempfile.gettempdir(), "blelight_bridge.log")
    target = tmp if _writable(tmp) else None
    logger.warning({"event": "log_path_fallback", "requested": candidate, "target": target or "stderr"})
    if target:
        return JsonRedactingHandler(open(target, "a", encoding="utf-8"))  # noqa: SIM115
    return JsonRedactingHandler(sys.stderr)


def setup_logging(level: str | int | None = None, log_path: str | None = None) -> int:
    """(Re)initialize levels and, when a log path is given, add a file handler.

    Returns the numeric level that was applied.
    """
    numeric_level = level if isinstance(level, int) else _get_log_level(level)
    for log in (logger, bridge_logger, ble_logger):
        log.setLevel(numeric_level)
    if not logger.handlers:
        logger.addHandler(JsonRedactingHandler(sys.stdout))
    if log_path:
        fh = init_file_handler(log_path)
        fh.setLevel(numeric_level)
        logger.addHandler(fh)
    return numeric_level


# Structured event emitters
def log_command_received(topic: str, payload: str) -> None:
    bridge_logger.info({"event": "command_received", "topic": topic, "payload": payload})


def log_state_published(topic: str, payload: str) -> None:
    bridge_logger.debug({"event": "state_published", "topic": topic, "payload": payload})


def log_ble_connected(device_id: str, name: str | None) -> None:
    ble_logger.info({"event": "ble_connected", "device": device_id, "name": name})


__all__ = [
    "LOG_LEVEL_MAP",
    "JsonRedactingHandler",
    "_flush_all_log_handlers",
    "_get_log_level",
    "ble_logger",
    "bridge_logger",
    "get_log_level",
    "init_file_handler",
    "log_ble_connected",
    "log_command_received",
    "log_state_published",
    "logger",
    "redact",
    "setup_logging",
]
