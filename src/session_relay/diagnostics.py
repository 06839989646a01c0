"""
診斷計數器

記錄中繼過程中被丟棄、忽略、失敗的訊息數量與少量診斷事件，
供 CLI 的 status 指令與測試檢查。
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from session_relay.schemas import utc_timestamp

logger = logging.getLogger(__name__)

MAX_EVENTS = 100


@dataclass(frozen=True)
class DiagnosticEvent:
    """單一診斷事件"""

    name: str
    detail: str
    timestamp: str


@dataclass
class Diagnostics:
    """中繼與指令分派的計數器"""

    received: int = 0
    dropped: int = 0
    handled: int = 0
    ignored: int = 0
    capability_errors: int = 0
    frames_published: int = 0
    frames_failed: int = 0
    events: deque[DiagnosticEvent] = field(default_factory=lambda: deque(maxlen=MAX_EVENTS))

    def record(self, name: str, detail: str = "") -> DiagnosticEvent:
        """記錄一筆診斷事件"""
        event = DiagnosticEvent(name=name, detail=detail, timestamp=utc_timestamp())
        self.events.append(event)
        logger.warning(f"🩺 診斷事件: {name} {detail}".rstrip())
        return event

    def events_named(self, name: str) -> list[DiagnosticEvent]:
        return [event for event in self.events if event.name == name]

    def snapshot(self) -> dict[str, Any]:
        """取得計數器快照"""
        return {
            "received": self.received,
            "dropped": self.dropped,
            "handled": self.handled,
            "ignored": self.ignored,
            "capability_errors": self.capability_errors,
            "frames_published": self.frames_published,
            "frames_failed": self.frames_failed,
            "events": len(self.events),
        }
