import os
import logging.config
from pathlib import Path
from typing import Dict, Any, Iterable

# httpx logs every request line at INFO; keep the client stack in step with us
LIBRARY_LOGGERS = ("httpx", "httpcore", "marketfeed")
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def _build_dict_config(
    log_file: str | None,
    level: str,
    loggers: Iterable[str] = LIBRARY_LOGGERS,
) -> Dict[str, Any]:
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stdout",
            "formatter": "std",
        }
    }
    root_handlers = ["console"]

    if log_file:
        # WatchedFileHandler reopens the file after external rotation
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.WatchedFileHandler",
            "filename": log_file,
            "formatter": "std",
        }
        root_handlers.append("file")

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"std": {"format": LOG_FORMAT}},
        "handlers": handlers,
        # propagate to root so one set of handlers serves every logger
        "loggers": {name: {"level": level, "propagate": True} for name in loggers},
        "root": {"level": level, "handlers": root_handlers},
    }


def configure_logging(level: str | None = None, log_file: str | None = None) -> None:
    """Configure logging to stdout and (optionally) to a file.

    ``level`` and ``log_file`` default to LOG_LEVEL and LOG_FILE_PATH.
    Idempotent: every BrowsingSession.start() calls it, only the first applies.
    """
    global _configured
    if _configured:
        return

    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_file = log_file or os.getenv("LOG_FILE_PATH") or None

    logging.config.dictConfig(_build_dict_config(log_file, level))
    _configured = True
