from __future__ import annotations

import json
import logging
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
import sys
from typing import Final, Literal, cast


_LOGGER_NAME: Final[str] = "patchfix"
_MAX_VALUE_LEN: Final[int] = 120
_VERBOSE_FORMAT: Final[str] = "%(asctime)s %(levelname)s %(name)s [%(threadName)s] %(message)s"
_LOW_VERBOSITY_EVENTS: Final[frozenset[str]] = frozenset(
    {
        "branch_update_received",
        "repair_enqueued",
        "repair_finished",
        "merge_conflict",
        "commit_republished",
        "temp_branch_cleanup_failed",
        "task_failed",
        "git_push_failed",
        "github_write_failed",
    }
)


VerboseMode = Literal["low", "high"]


def configure_logging(
    verbose: bool | str | None,
    *,
    state_dir: Path | None = None,
) -> None:
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False
    logger.handlers.clear()
    mode = _normalize_verbose_mode(verbose)

    if mode is None:
        logger.addHandler(logging.NullHandler())
        logger.setLevel(logging.CRITICAL + 1)
        return

    stream_handler = logging.StreamHandler(sys.stderr)
    _configure_handler(stream_handler, mode)
    logger.addHandler(stream_handler)

    if state_dir is not None:
        file_handler = _daily_file_handler(state_dir)
        _configure_handler(file_handler, mode)
        logger.addHandler(file_handler)

    logger.setLevel(logging.INFO)


def log_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.info(_build_event_message(event=event, fields=fields))


def log_warning_event(logger: logging.Logger, event: str, **fields: object) -> None:
    logger.warning(_build_event_message(event=event, fields=fields))


def _build_event_message(*, event: str, fields: dict[str, object]) -> str:
    parts = [f"event={_normalize_field_value(event)}"]
    for key in sorted(fields.keys()):
        parts.append(f"{key}={_normalize_field_value(fields[key])}")
    return " ".join(parts)


def _normalize_field_value(value: object) -> str:
    if value is None:
        normalized = "null"
    elif isinstance(value, bool):
        normalized = "true" if value else "false"
    elif isinstance(value, int | float):
        normalized = str(value)
    elif isinstance(value, str):
        collapsed = " ".join(value.split())
        if len(collapsed) > _MAX_VALUE_LEN:
            collapsed = f"{collapsed[:_MAX_VALUE_LEN]}..."
        normalized = collapsed if collapsed else "<empty>"
    else:
        normalized = f"<{type(value).__name__}>"

    if any(ch.isspace() for ch in normalized) or "=" in normalized:
        return json.dumps(normalized)
    return normalized


def _normalize_verbose_mode(verbose: bool | str | None) -> VerboseMode | None:
    if verbose is None:
        return None
    if isinstance(verbose, bool):
        return "high" if verbose else None
    normalized = verbose.strip().lower()
    if normalized in {"low", "high"}:
        return cast(VerboseMode, normalized)
    raise ValueError(f"Unsupported verbose mode: {verbose!r}")


def _daily_file_handler(state_dir: Path) -> TimedRotatingFileHandler:
    """Append to ``<state_dir>/logs/patchfix.log``, rolled over at UTC midnight."""
    logs_dir = state_dir / "logs"
    logs_dir.mkdir(parents=True, exist_ok=True)
    return TimedRotatingFileHandler(
        logs_dir / "patchfix.log", when="midnight", utc=True, backupCount=14, encoding="utf-8"
    )


def _configure_handler(handler: logging.Handler, mode: VerboseMode) -> None:
    handler.setFormatter(logging.Formatter(_VERBOSE_FORMAT))
    if mode == "low":
        handler.addFilter(_LowVerbosityFilter())


def _extract_event_name(message: str) -> str | None:
    if not message.startswith("event="):
        return None
    first_field = message.split(" ", 1)[0]
    if first_field == "event=":
        return None
    return first_field[len("event=") :]


class _LowVerbosityFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.WARNING:
            return True
        event_name = _extract_event_name(record.getMessage())
        return event_name in _LOW_VERBOSITY_EVENTS

