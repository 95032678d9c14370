"""Logging setup for the geminichat client.

Every record carries a ``session`` attribute naming the chat session whose
turn produced it (``-`` outside of a turn), so interleaved turns from several
sessions can be told apart in the rotating log file.
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["setup_logging", "get_log_path", "bind_session", "unbind_session", "SessionContextFilter"]

_DEFAULT_LOG_DIR = Path.home() / ".geminichat" / "logs"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(session)s | %(name)s | %(message)s"
_CONFIGURED = False
_LOG_PATH: Path | None = None

_SESSION: contextvars.ContextVar[str] = contextvars.ContextVar("geminichat_session", default="-")


class SessionContextFilter(logging.Filter):
    """Stamp records with the session bound in the current task context."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "session"):
            record.session = _SESSION.get()
        return True


def bind_session(session_id: str | None) -> contextvars.Token[str]:
    """Tag log records emitted from the current task with ``session_id``.

    Tasks copy the context they were created in, so a binding made inside a
    turn task never leaks into sibling turns.
    """

    return _SESSION.set(session_id or "-")


def unbind_session(token: contextvars.Token[str]) -> None:
    """Restore the session tag that was active before :func:`bind_session`."""

    try:
        _SESSION.reset(token)
    except ValueError:
        # Token created in another context; that context still owns the binding.
        _SESSION.set("-")


def setup_logging(
    level: int = logging.INFO,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Configure root logging with a rotating file handler and optional console output."""

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    target_dir = _resolve_log_dir(log_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    log_path = target_dir / "geminichat.log"

    formatter = logging.Formatter(fmt=_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    session_filter = SessionContextFilter()

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        # Handler-level so records from third-party loggers are stamped too.
        handler.addFilter(session_filter)

    logging.basicConfig(level=level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _tune_external_loggers(level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    return log_path


def get_log_path() -> Path | None:
    """Return the currently configured log file if available."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    env_override = os.environ.get("GEMINICHAT_LOG_DIR")
    return Path(log_dir or env_override or _DEFAULT_LOG_DIR).expanduser()


def _tune_external_loggers(root_level: int) -> None:
    quiet_level = logging.WARNING if root_level < logging.WARNING else root_level
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
