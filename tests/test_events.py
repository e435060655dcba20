"""Tests for the event bus and per-run event log."""

from __future__ import annotations

from orchestral.events import (
    ALL_CHANNELS,
    COORDINATOR_EVENT,
    PHASE_EVENT,
    EventBus,
    EventLog,
)


class TestEventBus:
    def test_channel_subscription(self):
        bus = EventBus()
        seen = []
        bus.subscribe(PHASE_EVENT, seen.append)
        bus.emit(PHASE_EVENT, "transition_completed", "run-1", to_phase="build")
        bus.emit(COORDINATOR_EVENT, "agent_completed", "run-1")
        assert [(e.type, e.run_id, e.data) for e in seen] == [
            ("transition_completed", "run-1", {"to_phase": "build"}),
        ]

    def test_wildcard(self):
        bus = EventBus()
        seen = []
        bus.subscribe(ALL_CHANNELS, seen.append)
        bus.emit(PHASE_EVENT, "a", "run-1")
        bus.emit(COORDINATOR_EVENT, "b", "run-1")
        assert [e.channel for e in seen] == [PHASE_EVENT, COORDINATOR_EVENT]

    def test_failing_handler_does_not_break_emit(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("dashboard down")

        bus.subscribe(PHASE_EVENT, broken)
        bus.subscribe(PHASE_EVENT, seen.append)
        event = bus.emit(PHASE_EVENT, "a", "run-1")
        assert seen == [event]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        bus.subscribe(PHASE_EVENT, seen.append)
        bus.unsubscribe(PHASE_EVENT, seen.append)
        bus.unsubscribe(COORDINATOR_EVENT, seen.append)
        bus.emit(PHASE_EVENT, "a", "run-1")
        assert seen == []


class TestEventLog:
    def test_append_and_read(self, tmp_path):
        bus = EventBus()
        log = EventLog(bus, tmp_path / "events.jsonl")
        bus.emit(PHASE_EVENT, "a", "run-1", n=1)
        bus.emit(COORDINATOR_EVENT, "b", "run-1", n=2)
        entries = log.read()
        assert [e["type"] for e in entries] == ["a", "b"]
        assert entries[0]["data"] == {"n": 1}
        assert [e["type"] for e in log.read(limit=1)] == ["b"]

    def test_missing_file(self, tmp_path):
        assert EventLog(EventBus(), tmp_path / "none.jsonl").read() == []

    def test_malformed_line_skipped(self, tmp_path):
        path = tmp_path / "events.jsonl"
        path.write_text('{"type": "a"}\nnot json\n\n{"type": "b"}\n')
        assert [e["type"] for e in EventLog(EventBus(), path).read()] == ["a", "b"]
