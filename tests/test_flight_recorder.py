"""
Tests for flight recorder.
Run with: pytest tests/test_flight_recorder.py
"""

import time

from chatservice.flight_recorder import FlightRecord, FlightRecorderStore


# ---------------------------------------------------------------------------
# FlightRecord
# ---------------------------------------------------------------------------

def test_record_basic_timeline():
    """FlightRecord captures ordered events with elapsed time."""
    rec = FlightRecord(conversation_id="conv1", user_id="alice", model="gpt-4o-mini")
    rec.log("Resolving")
    time.sleep(0.01)
    rec.log("Generating", messages=3, tokens=120)
    time.sleep(0.01)
    rec.log("First Fragment")
    rec.close()

    assert rec.id
    assert rec.closed
    assert rec.outcome == "done"
    assert len(rec.events) == 4  # 3 logged + 1 "Complete"
    assert rec.events[1]["details"] == {"messages": 3, "tokens": 120}
    assert rec.events[-1]["stage"] == "Complete"

    for i in range(1, len(rec.events)):
        assert rec.events[i]["elapsed_ms"] >= rec.events[i - 1]["elapsed_ms"]


def test_record_failed_close():
    rec = FlightRecord()
    rec.log("Resolving")
    rec.close("failed", phase="generate", error="reset")

    assert rec.outcome == "failed"
    assert rec.events[-1]["stage"] == "Failed"
    assert rec.events[-1]["details"] == {"phase": "generate", "error": "reset"}


def test_record_ignores_log_after_close():
    rec = FlightRecord()
    rec.log("Resolving")
    rec.close("cancelled")
    rec.log("Late")
    rec.close("done")

    assert rec.outcome == "cancelled"
    assert [e["stage"] for e in rec.events] == ["Resolving", "Cancelled"]


def test_record_drops_none_details():
    rec = FlightRecord()
    rec.log("Failed", phase=None, error="x")
    assert rec.events[0]["details"] == {"error": "x"}


def test_record_summary_breakdown():
    """Summary computes per-stage breakdown with percentages."""
    rec = FlightRecord()
    rec.log("Resolving")
    time.sleep(0.01)
    rec.log("Generating")
    time.sleep(0.02)
    rec.log("Finalizing")
    rec.close()

    s = rec.summary()
    assert s["total_ms"] >= 25
    assert "Finalizing" in s["breakdown"]
    assert "Resolving" not in s["breakdown"]


def test_record_summary_single_event():
    rec = FlightRecord()
    rec.log("Resolving")
    assert set(rec.summary()) == {"total_ms"}


def test_record_json_and_text():
    rec = FlightRecord(conversation_id="chat-1", model="gpt-4o-mini")
    rec.log("Generating", tokens=42)
    rec.close()

    data = rec.to_json()
    assert data["conversation_id"] == "chat-1"
    assert data["outcome"] == "done"
    assert len(data["events"]) == 2

    text = rec.render_text()
    assert f"FLIGHT RECORD: {rec.id} (done)" in text
    assert "Model: gpt-4o-mini" in text
    assert "Generating  (tokens=42)" in text
    assert "TOTAL:" in text


# ---------------------------------------------------------------------------
# FlightRecorderStore
# ---------------------------------------------------------------------------

def test_store_get_and_recent():
    store = FlightRecorderStore()
    records = [FlightRecord(conversation_id=str(i)) for i in range(5)]
    for r in records:
        store.store(r)

    assert store.count == 5
    assert store.get(records[2].id) is records[2]
    assert store.get("missing") is None
    assert store.recent(2) == records[-2:]


def test_store_evicts_oldest_at_capacity():
    store = FlightRecorderStore(max_records=3)
    records = [FlightRecord() for _ in range(5)]
    for r in records:
        store.store(r)

    assert store.count == 3
    assert store.get(records[0].id) is None
    assert store.get(records[4].id) is records[4]


def test_store_evicts_stale_records():
    store = FlightRecorderStore(retention_hours=1)
    old, fresh = FlightRecord(), FlightRecord()
    old.start_time -= 7200
    store.store(old)
    store.store(fresh)

    assert store.evict_stale() == 1
    assert store.get(old.id) is None
    assert store.get(fresh.id) is fresh
