"""
Tagged messages sent from worker processes to the pool.

Every message is a plain dict on the wire with a ``type`` tag and the id of
the task it belongs to:

    {"type": "progress", "task_id": ..., "progress": 0.5, "message": "..."}
    {"type": "result",   "task_id": ..., "value": ...}
    {"type": "error",    "task_id": ..., "message": ..., "error_type": ...,
                         "traceback": ..., "critical": bool}
    {"type": "log",      "task_id": ..., "level": "info", "message": ...}

parse_message() validates the boundary; an unknown tag or a missing field is
a DataError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Union

from internal_linker.errors import DataError

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


@dataclass(frozen=True)
class ProgressMessage:
    task_id: str
    progress: float
    message: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {"type": "progress", "task_id": self.task_id, "progress": self.progress, "message": self.message}


@dataclass(frozen=True)
class ResultMessage:
    task_id: str
    value: Any = None

    def to_wire(self) -> dict[str, Any]:
        return {"type": "result", "task_id": self.task_id, "value": self.value}


@dataclass(frozen=True)
class ErrorMessage:
    task_id: str
    message: str
    error_type: str = "Exception"
    traceback: str = ""
    critical: bool = False

    def to_wire(self) -> dict[str, Any]:
        return {
            "type": "error",
            "task_id": self.task_id,
            "message": self.message,
            "error_type": self.error_type,
            "traceback": self.traceback,
            "critical": self.critical,
        }


@dataclass(frozen=True)
class LogMessage:
    task_id: str
    level: str
    message: str

    @property
    def levelno(self) -> int:
        return LOG_LEVELS.get(self.level, logging.INFO)

    def to_wire(self) -> dict[str, Any]:
        return {"type": "log", "task_id": self.task_id, "level": self.level, "message": self.message}


Message = Union[ProgressMessage, ResultMessage, ErrorMessage, LogMessage]


def _field(raw: dict[str, Any], name: str, tag: str) -> Any:
    if name not in raw:
        raise DataError(f"{tag!r} message is missing field {name!r}")
    return raw[name]


def parse_message(raw: Any) -> Message:
    """Validate a wire dict and return the typed message."""
    if not isinstance(raw, dict):
        raise DataError(f"Worker message must be a dict, got {type(raw).__name__}")
    tag = raw.get("type")
    task_id = raw.get("task_id")
    if task_id is None:
        raise DataError(f"Worker message {tag!r} has no task_id")

    if tag == "progress":
        progress = _field(raw, "progress", tag)
        if not isinstance(progress, (int, float)):
            raise DataError(f"progress must be a number, got {type(progress).__name__}")
        return ProgressMessage(task_id, float(progress), str(raw.get("message", "")))
    if tag == "result":
        return ResultMessage(task_id, _field(raw, "value", tag))
    if tag == "error":
        return ErrorMessage(
            task_id,
            str(_field(raw, "message", tag)),
            str(raw.get("error_type", "Exception")),
            str(raw.get("traceback", "")),
            bool(raw.get("critical", False)),
        )
    if tag == "log":
        level = str(raw.get("level", "info"))
        if level not in LOG_LEVELS:
            raise DataError(f"Unknown log level {level!r}")
        return LogMessage(task_id, level, str(_field(raw, "message", tag)))
    raise DataError(f"Unknown worker message type {tag!r}")


__all__ = [
    "ErrorMessage",
    "LogMessage",
    "Message",
    "ProgressMessage",
    "ResultMessage",
    "parse_message",
]
