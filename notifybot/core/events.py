"""
notifybot event types.

Lifecycle milestones (poll cycles, dispatch batches, rotations, fatal
scheduler exits) are published as events so operators can observe the bot
without the components knowing who listens.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any


class EventType:
    """
    Event type constants.

    Hierarchical naming: "category:action"
    Supports wildcard matching: "poll:*" matches "poll:failed"
    """

    # System lifecycle
    SYSTEM_START = "system:start"
    SYSTEM_STOP = "system:stop"

    # Poll loop
    POLL_SUCCEEDED = "poll:succeeded"
    POLL_FAILED = "poll:failed"
    SCHEDULER_FATAL = "scheduler:fatal"

    # Dispatch
    DISPATCH_COMPLETE = "dispatch:complete"

    # Rotation
    ROTATION_COMPLETE = "rotation:complete"
    ROTATION_PURGED = "rotation:purged"

    # Registrations
    REGISTRATION_ADDED = "registration:added"
    REGISTRATION_REMOVED = "registration:removed"

    # Topology
    TOPOLOGY_UPDATED = "topology:updated"


@dataclass(slots=True)
class Event:
    """A single lifecycle event, timestamped and traceable to its source."""

    type: str
    data: dict[str, Any] = field(default_factory=dict)
    source: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:16])
    timestamp: float = field(default_factory=time.time)
