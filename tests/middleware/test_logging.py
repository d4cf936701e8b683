"""Tests for logging setup and the event logger middleware."""

import json
import logging

import pytest

from notifybot.core.bus import EventBus
from notifybot.core.events import Event, EventType
from notifybot.middleware.logging import EventLogger, setup_logging


@pytest.mark.asyncio
async def test_event_logger_writes_jsonl(tmp_path):
    """EventLogger appends one JSON line per event and passes it on."""
    event_logger = EventLogger(tmp_path)
    bus = EventBus()
    bus.use(event_logger.middleware)
    received = []

    async def handler(event):
        received.append(event)

    bus.on(EventType.POLL_FAILED, handler)
    await bus.emit(Event(type=EventType.POLL_FAILED, source="poller", data={"failures": 2, "raw": b"x"}))

    assert len(received) == 1
    lines = event_logger.events_file.read_text().splitlines()
    record = json.loads(lines[0])
    assert record["type"] == "poll:failed"
    assert record["source"] == "poller"
    assert record["data"]["failures"] == 2
    assert record["data"]["raw"] == "b'x'"


@pytest.mark.asyncio
async def test_event_logger_can_skip_file(tmp_path):
    event_logger = EventLogger(tmp_path, log_events=False)

    async def next_handler(event):
        return event

    await event_logger.middleware(Event(type=EventType.SYSTEM_START), next_handler)
    assert not event_logger.events_file.exists()


def test_setup_logging_creates_log_file(tmp_path):
    root = logging.getLogger("notifybot")
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        logger = setup_logging(log_dir=tmp_path, console_level="ERROR")
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()
        files = list(tmp_path.glob("notifybot_*.log"))
        assert len(files) == 1
        assert "hello" in files[0].read_text()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved_handlers
        root.setLevel(saved_level)
