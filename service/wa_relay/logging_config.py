"""Logging bootstrap for the relay service."""
from __future__ import annotations

import logging
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Third-party loggers that are too chatty at the relay's level.
_QUIET_LOGGERS = {
    "websockets": "WARNING",
    "httpx": "WARNING",
    "httpcore": "WARNING",
    "uvicorn.access": "WARNING",
}


def _rotating_file(path: Path, level: str, retention_days: int) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.TimedRotatingFileHandler",
        "formatter": "relay",
        "level": level,
        "filename": str(path),
        "when": "midnight",
        "backupCount": max(int(retention_days), 1),
        "utc": True,
        "delay": True,
        "encoding": "utf-8",
    }


def configure_logging(level: str = "INFO", log_dir: Optional[Path] = None, retention_days: int = 14) -> None:
    """Console plus two daily files: ``wa-relay.log`` for everything, ``wa-relay-errors.log`` for warnings up.

    Uvicorn's own loggers are routed through the same handlers so request
    and connection logs end up next to the supervisor's.
    """

    if log_dir is None:
        log_dir = Path(__file__).resolve().parents[2] / "logs"
    log_dir = Path(log_dir).expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)
    level = level.upper()

    loggers: Dict[str, Any] = {name: {"level": quiet} for name, quiet in _QUIET_LOGGERS.items()}
    for name in ("uvicorn", "uvicorn.error"):
        loggers[name] = {"level": level, "handlers": [], "propagate": True}

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"relay": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "relay",
                    "level": level,
                },
                "relay_file": _rotating_file(log_dir / "wa-relay.log", level, retention_days),
                "relay_errors": _rotating_file(log_dir / "wa-relay-errors.log", "WARNING", retention_days),
            },
            "loggers": loggers,
            "root": {"level": level, "handlers": ["console", "relay_file", "relay_errors"]},
        }
    )
    logging.getLogger(__name__).debug("Logging configured (level=%s, dir=%s)", level, log_dir)


__all__ = ["LOG_FORMAT", "configure_logging"]
