"""Structured logging helpers shared across hydration components."""

from __future__ import annotations

import gzip
import json
import logging
import re
import shutil
import sys
import time
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Optional

from .io_safe import sanitize_filename
from .settings import LOG_DIR, LoggingSettings

__all__ = ["JSONFormatter", "mask_sensitive_data", "prune_logs", "setup_logging"]

LOGGER_NAME = "ToolVault.Hydration"
LOG_PREFIX = "toolvault-"

_SENSITIVE_KEYS = {"authorization", "api_key", "apikey", "token", "secret", "password"}
_URL_CREDENTIALS = re.compile(r"(?P<scheme>[a-z][a-z0-9+.-]*://)[^/@\s]+@", re.IGNORECASE)


def mask_sensitive_data(payload: Dict[str, object]) -> Dict[str, object]:
    """Return a copy of ``payload`` with secret fields and URL credentials masked."""

    def _mask_value(value: object, key_hint: Optional[str] = None) -> object:
        if isinstance(value, dict):
            return {sub_key: _mask_value(sub_value, str(sub_key).lower()) for sub_key, sub_value in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(_mask_value(item, key_hint) for item in value)
        if isinstance(value, str):
            if key_hint in _SENSITIVE_KEYS or "bearer " in value.lower():
                return "***masked***"
            return _URL_CREDENTIALS.sub(r"\g<scheme>***@", value)
        return value

    return {key: _mask_value(value, key.lower()) for key, value in payload.items()}


class JSONFormatter(logging.Formatter):
    """Formatter emitting masked JSON log entries for hydration runs."""

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "timestamp": now.isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "tool_id": getattr(record, "tool_id", None),
            "stage": getattr(record, "stage", None),
        }
        if hasattr(record, "extra_fields") and isinstance(record.extra_fields, dict):
            payload.update(record.extra_fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(mask_sensitive_data(payload), default=str)


def prune_logs(log_dir: Path, settings: LoggingSettings) -> List[Path]:
    """Apply ``settings.retention_days`` to the hydration logs in ``log_dir``.

    Expired JSON-lines logs (rotated backups included) are gzipped next to
    the original, which is then removed.  Expired ``.gz`` archives are
    deleted.  An archive written by this pass is new and survives until it
    expires in turn.

    Returns:
        The expired paths that were archived or deleted.
    """

    cutoff = time.time() - settings.retention_days * 86400
    expired = [path for path in sorted(log_dir.glob(f"{LOG_PREFIX}*.jsonl*")) if path.stat().st_mtime < cutoff]
    for path in expired:
        if path.suffix == ".gz":
            path.unlink(missing_ok=True)
            continue
        with path.open("rb") as source, gzip.open(path.with_name(path.name + ".gz"), "wb") as target:
            shutil.copyfileobj(source, target)
        path.unlink(missing_ok=True)
    if expired:
        logging.getLogger(LOGGER_NAME).debug(
            "pruned expired logs",
            extra={"stage": "logging", "extra_fields": {"paths": [path.name for path in expired]}},
        )
    return expired


def setup_logging(
    settings: Optional[LoggingSettings] = None,
    *,
    level: Optional[str] = None,
    console: bool = True,
    propagate: bool = False,
) -> logging.Logger:
    """Configure hydration logging: a console handler plus a rotating JSON-lines file.

    Handlers installed by a previous call are replaced, so calling this twice
    never duplicates output.  Console output goes to stderr to keep stdout
    free for machine-readable command output.  ``level`` overrides
    ``settings.level``.
    """

    settings = settings or LoggingSettings()
    resolved_dir = settings.log_dir or LOG_DIR
    resolved_dir.mkdir(parents=True, exist_ok=True)
    prune_logs(resolved_dir, settings)

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, (level or settings.level).upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_toolvault_managed", False):
            logger.removeHandler(handler)
            if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) in (
                sys.stdout,
                sys.stderr,
            ):
                continue
            handler.close()

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
        stream_handler._toolvault_managed = True  # type: ignore[attr-defined]
        logger.addHandler(stream_handler)

    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    file_handler = RotatingFileHandler(
        resolved_dir / sanitize_filename(f"{LOG_PREFIX}{today}.jsonl"),
        maxBytes=settings.max_log_size_mb * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(JSONFormatter())
    file_handler._toolvault_managed = True  # type: ignore[attr-defined]
    logger.addHandler(file_handler)

    logger.propagate = propagate
    return logger
