"""Logging configuration for the marking service."""

from __future__ import annotations

import logging.config
import os
from pathlib import Path
from typing import Any, Dict, List

_logging_configured = False

_MAX_LOG_BYTES = 5 * 1024 * 1024
_LOG_BACKUPS = 5


def _rotating(path: Path, formatter: str) -> Dict[str, Any]:
    return {
        "class": "logging.handlers.RotatingFileHandler",
        "formatter": formatter,
        "filename": str(path),
        "maxBytes": _MAX_LOG_BYTES,
        "backupCount": _LOG_BACKUPS,
        "encoding": "utf-8",
        "delay": True,
    }


def build_logging_config(log_dir: Path | None, log_level: str) -> Dict[str, Any]:
    """Return a dictConfig; file handlers are omitted when ``log_dir`` is None."""

    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stderr",
        },
        "access_console": {
            "class": "logging.StreamHandler",
            "formatter": "access",
            "stream": "ext://sys.stdout",
        },
    }
    app_handlers: List[str] = ["console"]
    access_handlers: List[str] = ["access_console"]
    if log_dir is not None:
        handlers["file"] = _rotating(log_dir / os.getenv("MARKER_LOG_FILE", "marker.log"), "default")
        handlers["access_file"] = _rotating(
            log_dir / os.getenv("MARKER_ACCESS_LOG_FILE", "marker-access.log"), "access"
        )
        app_handlers.append("file")
        access_handlers.append("access_file")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "()": "uvicorn.logging.DefaultFormatter",
                "fmt": "%(levelprefix)s %(asctime)s %(name)s: %(message)s",
                "use_colors": None,
            },
            "access": {
                "()": "uvicorn.logging.AccessFormatter",
                "fmt": "%(levelprefix)s %(client_addr)s - \"%(request_line)s\" %(status_code)s",
            },
        },
        "handlers": handlers,
        "loggers": {
            "marker": {"handlers": app_handlers, "level": log_level, "propagate": False},
            "uvicorn": {"handlers": app_handlers, "level": log_level, "propagate": False},
            "uvicorn.error": {"handlers": app_handlers, "level": log_level, "propagate": False},
            "uvicorn.access": {"handlers": access_handlers, "level": log_level, "propagate": False},
        },
        "root": {"handlers": app_handlers, "level": log_level},
    }


def configure_logging() -> None:
    """Install console and rotating-file logging once per process.

    ``MARKER_LOG_DIR=""`` keeps logging on the console only.
    """
    global _logging_configured
    if _logging_configured:
        return

    raw_dir = os.getenv("MARKER_LOG_DIR", "logs")
    log_dir = Path(raw_dir) if raw_dir else None
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(build_logging_config(log_dir, os.getenv("MARKER_LOG_LEVEL", "INFO")))
    _logging_configured = True


__all__ = ["build_logging_config", "configure_logging"]
