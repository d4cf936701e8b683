"""
Logging setup and the event-logging bus middleware.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path

from notifybot.core.bus import MiddlewareNext
from notifybot.core.events import Event


def setup_logging(
    log_dir: Path | None = None,
    console_level: int | str = logging.WARNING,
    file_level: int = logging.DEBUG,
) -> logging.Logger:
    """
    Configure the ``notifybot`` logger.

    Args:
        log_dir: Directory for log files (default: ~/.notifybot/logs)
        console_level: Minimum level for console output
        file_level: Minimum level for file output

    Returns:
        The configured logger
    """
    log_dir = (log_dir or Path.home() / ".notifybot" / "logs").expanduser()
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("notifybot")
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter("[%(levelname)s] %(message)s"))
    logger.addHandler(console_handler)

    log_file = log_dir / f"notifybot_{datetime.now().strftime('%Y%m%d')}.log"
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(file_handler)

    logger.info(f"Logging initialized. File: {log_file}")
    return logger


class EventLogger:
    """
    Writes every bus event to a dated JSON-lines file.

    Usage:
        event_logger = EventLogger(log_dir=Path("~/.notifybot/logs"))
        bus.use(event_logger.middleware)
    """

    def __init__(self, log_dir: Path | None = None, log_events: bool = True) -> None:
        self._log_dir = (log_dir or Path.home() / ".notifybot" / "logs").expanduser()
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_events = log_events
        self._events_file = self._log_dir / f"events_{datetime.now().strftime('%Y%m%d')}.jsonl"
        self._logger = logging.getLogger("notifybot.events")

    @property
    def events_file(self) -> Path:
        return self._events_file

    async def middleware(self, event: Event, next_handler: MiddlewareNext) -> Event:
        self._logger.debug(f"[{event.type}] source={event.source} data={event.data}")
        if self._log_events:
            self._write_event(event)
        return await next_handler(event)

    def _write_event(self, event: Event) -> None:
        record = {
            "timestamp": datetime.fromtimestamp(event.timestamp).isoformat(),
            "id": event.id,
            "type": event.type,
            "source": event.source,
            "data": {k: _safe(v) for k, v in event.data.items()},
        }
        try:
            with open(self._events_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            self._logger.warning(f"Failed to write event log: {e}")


def _safe(value: object) -> object:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)
