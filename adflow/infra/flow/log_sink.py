# adflow/infra/flow/log_sink.py
"""
Structured log sink passed explicitly to every component of a run.

Each run owns its sink; entries are collected in order and also forwarded
to the standard ``logging`` logger of the component that emitted them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


@dataclass
class LogEntry:
    timestamp: datetime
    level: str
    source: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "source": self.source,
            "message": self.message,
        }


@dataclass
class LogSink:
    """
    Append-only collector of structured log entries.

    Attributes:
        name: Logger name entries are forwarded to
        entries: Entries collected so far, in emission order
    """
    name: str = "adflow.run"
    entries: List[LogEntry] = field(default_factory=list)

    def log(self, level: int, message: str, source: Optional[str] = None) -> LogEntry:
        entry = LogEntry(
            timestamp=datetime.now(timezone.utc),
            level=logging.getLevelName(level),
            source=source or self.name,
            message=message,
        )
        self.entries.append(entry)
        logging.getLogger(self.name).log(level, f"[{entry.source}] {message}")
        return entry

    def info(self, message: str, source: Optional[str] = None) -> LogEntry:
        return self.log(logging.INFO, message, source)

    def warning(self, message: str, source: Optional[str] = None) -> LogEntry:
        return self.log(logging.WARNING, message, source)

    def error(self, message: str, source: Optional[str] = None) -> LogEntry:
        return self.log(logging.ERROR, message, source)

    def child(self, source: str) -> BoundLogSink:
        """Return a view of this sink that stamps every entry with ``source``."""
        return BoundLogSink(self, source)

    def to_list(self) -> List[Dict[str, Any]]:
        return [entry.to_dict() for entry in self.entries]


class BoundLogSink:
    """A sink view with a fixed source, handed to a single node."""

    def __init__(self, sink: LogSink, source: str):
        self._sink = sink
        self.source = source

    def info(self, message: str) -> LogEntry:
        return self._sink.info(message, self.source)

    def warning(self, message: str) -> LogEntry:
        return self._sink.warning(message, self.source)

    def error(self, message: str) -> LogEntry:
        return self._sink.error(message, self.source)
