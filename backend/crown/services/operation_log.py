"""Per-request ordered log of submission pipeline steps."""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

LOG_LEVELS = ("info", "warn", "error", "success")

_STDLIB_LEVELS = {
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
    "success": logging.INFO,
}


@dataclass
class LogEntry:
    """A single diagnostic entry."""
    level: str
    message: str
    step: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
        }
        if self.step:
            payload["step"] = self.step
        if self.details:
            payload["details"] = self.details
        return payload


class OperationLog:
    """
    Ordered, leveled record of one pipeline run.

    One instance is created per submission and passed explicitly to every
    stage; entries are returned to the caller on success and on failure.
    Each entry is mirrored to the server log at the matching level.
    """

    def __init__(self, context: Optional[str] = None):
        self.context = context
        self._entries: List[LogEntry] = []

    def _add(self, level: str, message: str, step: Optional[str], details: Optional[Dict[str, Any]]) -> LogEntry:
        entry = LogEntry(level=level, message=message, step=step, details=details)
        self._entries.append(entry)
        prefix = f"[{self.context}] " if self.context else ""
        logger.log(_STDLIB_LEVELS[level], "%s%s", prefix, message)
        return entry

    def info(self, message: str, step: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self._add("info", message, step, details)

    def warn(self, message: str, step: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self._add("warn", message, step, details)

    def error(self, message: str, step: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self._add("error", message, step, details)

    def success(self, message: str, step: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> LogEntry:
        return self._add("success", message, step, details)

    @property
    def entries(self) -> List[LogEntry]:
        return list(self._entries)

    def by_level(self, level: str) -> List[LogEntry]:
        return [entry for entry in self._entries if entry.level == level]

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self._entries]

    def __len__(self) -> int:
        return len(self._entries)
