"""Logging setup for the ``taleleaf`` logger hierarchy.

Handlers are attached to the package logger rather than the root logger, so
an embedding application keeps control of its own output. Every record
written by these handlers carries a ``provider_id`` column; governor code
passes it through ``extra`` and everything else shows ``-``.

Per-area levels can be tuned without code changes through
``TALELEAF_LOG_LEVELS``, a comma separated list such as
``taleleaf.ai.client=DEBUG,taleleaf.services=WARNING``.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from pathlib import Path
from typing import Mapping

__all__ = [
    "PACKAGE_LOGGER",
    "ProviderContextFilter",
    "parse_levels",
    "provider_extra",
    "setup_logging",
]

PACKAGE_LOGGER = "taleleaf"
LOG_FILE_NAME = "taleleaf.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(provider_id)s | %(message)s"
_NO_PROVIDER = "-"
_DEFAULT_LOG_DIR = Path.home() / ".taleleaf" / "logs"
_HTTP_LOGGERS: tuple[str, ...] = ("httpx", "httpcore", "openai")

_installed: list[tuple[logging.Logger, logging.Handler]] = []
_log_path: Path | None = None


class ProviderContextFilter(logging.Filter):
    """Give every record a ``provider_id`` so the shared format never fails."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "provider_id", None):
            record.provider_id = _NO_PROVIDER
        return True


def provider_extra(provider_id: str) -> dict[str, str]:
    """``extra`` mapping that tags a log call with a provider id."""

    return {"provider_id": provider_id}


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    levels: Mapping[str, int] | None = None,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install rotating-file and console handlers on the ``taleleaf`` logger.

    ``levels`` overrides the level of individual loggers below the package,
    and is applied after any ``TALELEAF_LOG_LEVELS`` entries. Calling again
    without ``force`` returns the existing log path untouched; with
    ``force`` the previous handlers are closed and replaced.
    """

    global _log_path
    if _installed and not force and _log_path is not None:
        return _log_path
    _remove_handlers()

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILE_NAME

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    context = ProviderContextFilter()
    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8")
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        handler.addFilter(context)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(level)
    for handler in handlers:
        package_logger.addHandler(handler)
        _installed.append((package_logger, handler))

    overrides = parse_levels(os.environ.get("TALELEAF_LOG_LEVELS", ""))
    overrides.update(levels or {})
    for name, override in overrides.items():
        logging.getLogger(name).setLevel(override)
        if override < level:
            for handler in handlers:
                handler.setLevel(min(handler.level, override))

    # HTTP client chatter stays at WARNING even in debug runs.
    for name in _HTTP_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, level))

    _log_path = log_path
    return log_path


def parse_levels(raw: str) -> dict[str, int]:
    """Parse ``name=LEVEL`` pairs; malformed entries are skipped."""

    parsed: dict[str, int] = {}
    for entry in raw.split(","):
        name, sep, level_name = entry.partition("=")
        name = name.strip()
        value = logging.getLevelName(level_name.strip().upper())
        if sep and name and isinstance(value, int):
            parsed[name] = value
    return parsed


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("TALELEAF_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _remove_handlers() -> None:
    while _installed:
        logger, handler = _installed.pop()
        logger.removeHandler(handler)
        handler.close()
