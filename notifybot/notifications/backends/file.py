"""
FilePushBackend — appends every push to a JSON-lines file instead of sending.

For local runs and staging: always succeeds, and records exactly what a
real backend would have received (token prefix only).
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path

from notifybot.core.errors import PushError
from notifybot.notifications.base import PushBackend, build_data_payload

logger = logging.getLogger(__name__)


class FilePushBackend(PushBackend):
    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = (log_path or Path.home() / ".notifybot" / "pushes.jsonl").expanduser()
        self._count = 0

    @property
    def name(self) -> str:
        return "file"

    async def send(self, token: str, message_hash: bytes, identity_fp: bytes) -> str:
        record = {
            "sent_at": int(time.time()),
            "token_prefix": token[:8],
            "data": build_data_payload(message_hash, identity_fp),
        }
        try:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._log_path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
        except OSError as e:
            raise PushError(f"FilePushBackend write failed: {e}", backend=self.name, retryable=True) from e
        self._count += 1
        return f"file:{self._count}"
