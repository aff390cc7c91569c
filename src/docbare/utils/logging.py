"""Logging setup for the DocBare service.

Every record written through the configured handlers carries the session id
of the query being served (``-`` outside a query), so interleaved streams in
``docbare.log`` can be told apart.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
from contextvars import ContextVar, Token
from pathlib import Path

__all__ = ["SessionFilter", "bind_session", "get_log_path", "reset_session", "setup_logging"]

LOG_FILENAME = "docbare.log"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(session)s | %(name)s | %(message)s"
_DEFAULT_LOG_DIR = Path.home() / ".docbare" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai", "uvicorn.access")
# uvicorn installs its own handlers unless told otherwise; route its records through ours.
_SERVER_LOGGERS: tuple[str, ...] = ("uvicorn", "uvicorn.error", "uvicorn.access")
_NO_SESSION = "-"

_session_id: ContextVar[str] = ContextVar("docbare_session_id", default=_NO_SESSION)
_CONFIGURED = False
_LOG_PATH: Path | None = None


class SessionFilter(logging.Filter):
    """Stamp ``record.session`` with the session bound to the current context."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.session = _session_id.get()
        return True


def bind_session(session_id: str | None) -> Token[str]:
    """Attach ``session_id`` to log records emitted from the current context."""

    return _session_id.set(session_id or _NO_SESSION)


def reset_session(token: Token[str]) -> None:
    _session_id.reset(token)


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install the rotating log file (and optionally stderr) on the root logger.

    ``level`` falls back to ``DOCBARE_LOG_LEVEL`` and then ``INFO``. Repeated
    calls return the existing log path unless ``force`` is set.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    resolved_level = _resolve_level(level)
    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / LOG_FILENAME

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    session_filter = SessionFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(resolved_level)
        handler.setFormatter(formatter)
        handler.addFilter(session_filter)

    logging.basicConfig(level=resolved_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _adopt_server_loggers()
    _quiet_external_loggers(resolved_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_level(level: int | str | None) -> int:
    raw = level if level is not None else os.environ.get("DOCBARE_LOG_LEVEL", logging.INFO)
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {raw!r}")
    return resolved


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("DOCBARE_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _adopt_server_loggers() -> None:
    for logger_name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(logger_name)
        for handler in list(server_logger.handlers):
            server_logger.removeHandler(handler)
        server_logger.propagate = True


def _quiet_external_loggers(root_level: int) -> None:
    quiet_level = max(logging.WARNING, root_level)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
