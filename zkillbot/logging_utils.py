import logging
import os
from pathlib import Path
from typing import Any, Dict

_LEVEL = logging.INFO
_LOG_TO_FILE = True


def _ensure_log_dir() -> Path:
    """
    Ensure a log directory exists and return it.

    Defaults to ./logs, override with ZKILLBOT_LOG_DIR.
    """
    base = Path(os.getenv("ZKILLBOT_LOG_DIR", "logs"))
    base.mkdir(parents=True, exist_ok=True)
    return base


def configure_logging(cfg: Dict[str, Any]) -> None:
    """Apply the `logging` config section. Call before the first get_logger()."""
    global _LEVEL, _LOG_TO_FILE
    lcfg = cfg.get("logging", {})
    level_name = str(lcfg.get("level", "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level {level_name!r}")
    _LEVEL = level
    _LOG_TO_FILE = bool(lcfg.get("log_to_file", True))
    if lcfg.get("log_dir"):
        os.environ.setdefault("ZKILLBOT_LOG_DIR", str(lcfg["log_dir"]))
    # Loggers created at import time keep their handlers but take the new level.
    for existing in logging.root.manager.loggerDict.values():
        if isinstance(existing, logging.Logger) and existing.handlers:
            existing.setLevel(level)


def get_logger(name: str) -> logging.Logger:
    """Return a module-level logger with a simple, consistent format and file logging."""
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(_LEVEL)
    formatter = logging.Formatter(
        "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Console logging (picked up by systemd/journald in production)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    if not _LOG_TO_FILE:
        return logger

    try:
        log_dir = _ensure_log_dir()
        file_handler = logging.FileHandler(log_dir / f"{name}.log")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError:  # pragma: no cover - file logging is best-effort
        # If the filesystem is not writable, fall back to console-only logs.
        pass

    return logger
