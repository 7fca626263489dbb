"""
Flight Recorder — completion round timelines.

Captures the milestones of each completion round:
  resolving → generating → first fragment → finalizing → persisted

In-memory ring buffer with a size cap and time-based retention. This is
for live debugging, not historical analysis.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from datetime import datetime, timezone
from uuid import uuid4

logger = logging.getLogger(__name__)

_CLOSING_STAGE = {"failed": "Failed", "cancelled": "Cancelled"}


class FlightRecord:
    """Timeline for one completion round."""

    __slots__ = (
        "id", "conversation_id", "user_id", "model",
        "start_time", "events", "outcome", "_closed",
    )

    def __init__(self, conversation_id: str = "", user_id: str = "", model: str = ""):
        self.id: str = uuid4().hex[:12]
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.model = model
        self.start_time: float = time.monotonic()
        self.events: list[dict] = []
        self.outcome: str = "in_flight"
        self._closed = False

    def log(self, stage: str, **details):
        """Record a milestone."""
        if self._closed:
            return
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "elapsed_ms": round((time.monotonic() - self.start_time) * 1000, 2),
            "stage": stage,
        }
        details = {k: v for k, v in details.items() if v is not None}
        if details:
            event["details"] = details
        self.events.append(event)

    def close(self, outcome: str = "done", **details):
        """Seal the record; later log() calls are ignored."""
        if self._closed:
            return
        self.log(_CLOSING_STAGE.get(outcome, "Complete"), **details)
        self.outcome = outcome
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def total_ms(self) -> float:
        if not self.events:
            return 0.0
        return self.events[-1]["elapsed_ms"]

    def summary(self) -> dict:
        """Time spent reaching each stage, largest first."""
        if len(self.events) < 2:
            return {"total_ms": self.total_ms}

        stages: dict[str, float] = {}
        for prev, cur in zip(self.events, self.events[1:]):
            delta = cur["elapsed_ms"] - prev["elapsed_ms"]
            stages[cur["stage"]] = stages.get(cur["stage"], 0.0) + delta

        total = self.total_ms or 1.0
        return {
            "total_ms": round(self.total_ms, 2),
            "breakdown": {
                stage: {"ms": round(ms, 2), "pct": round(ms / total * 100, 1)}
                for stage, ms in sorted(stages.items(), key=lambda x: -x[1])
            },
        }

    def to_json(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "user_id": self.user_id,
            "model": self.model,
            "outcome": self.outcome,
            "events": self.events,
            "summary": self.summary(),
        }

    def render_text(self) -> str:
        lines = [f"FLIGHT RECORD: {self.id} ({self.outcome})"]
        if self.conversation_id:
            lines.append(f"Conversation: {self.conversation_id[:16]}")
        if self.model:
            lines.append(f"Model: {self.model}")
        lines.append("")
        for event in self.events:
            line = f"  [{event['elapsed_ms']:8.1f}ms] {event['stage']}"
            if event.get("details"):
                line += "  (" + ", ".join(f"{k}={v}" for k, v in event["details"].items()) + ")"
            lines.append(line)
        lines.append("")
        lines.append(f"  TOTAL: {self.total_ms:.0f}ms")
        return "\n".join(lines)


class FlightRecorderStore:
    """
    In-memory store for flight records.
    Thread-safe, oldest-first eviction at capacity, time-based retention.
    """

    def __init__(self, max_records: int = 1000, retention_hours: int = 24):
        self.max_records = max_records
        self.retention_seconds = retention_hours * 3600
        self._records: OrderedDict[str, FlightRecord] = OrderedDict()
        self._lock = threading.Lock()

    def store(self, record: FlightRecord):
        with self._lock:
            while len(self._records) >= self.max_records:
                self._records.popitem(last=False)
            self._records[record.id] = record

    def get(self, record_id: str) -> FlightRecord | None:
        with self._lock:
            return self._records.get(record_id)

    def recent(self, n: int = 10) -> list[FlightRecord]:
        with self._lock:
            items = list(self._records.values())
        return items[-n:]

    def evict_stale(self) -> int:
        """Drop records older than the retention period. Returns how many."""
        cutoff = time.monotonic() - self.retention_seconds
        with self._lock:
            stale = [rid for rid, rec in self._records.items() if rec.start_time < cutoff]
            for rid in stale:
                del self._records[rid]
        if stale:
            logger.debug("Flight recorder evicted %d stale records", len(stale))
        return len(stale)

    @property
    def count(self) -> int:
        return len(self._records)
