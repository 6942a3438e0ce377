import json

from esmon.event_emitter import EventEmitter
from esmon.implementations import RealClock
from esmon.port_lock import PortLockRegistry


def test_event_emitter_sequences_and_persists(tmp_path):
    events_path = tmp_path / "events.jsonl"
    emitter = EventEmitter(RealClock(), str(events_path))

    first = emitter.emit("test_event", {"key": "value"})
    second = emitter.emit("another_event", {})

    lines = events_path.read_text().splitlines()
    assert len(lines) == 2
    parsed_first = json.loads(lines[0])
    parsed_second = json.loads(lines[1])

    assert parsed_first["sequence"] == 1
    assert parsed_first["schema_version"] == 1
    assert parsed_first["type"] == "test_event"
    assert parsed_first["data"]["key"] == "value"
    assert parsed_second["sequence"] == 2
    assert parsed_second["type"] == "another_event"
    assert first["level"] == second["level"] == "info"

    # New emitter should continue sequence from file.
    emitter2 = EventEmitter(RealClock(), str(events_path))
    third = emitter2.emit("third_event", {})
    assert third["sequence"] == 3


def test_event_emitter_creates_parent_dir(tmp_path):
    events_path = tmp_path / "run" / "nested" / "events.jsonl"
    EventEmitter(RealClock(), str(events_path)).emit("hello")
    assert events_path.exists()


def test_corrupt_tail_restarts_sequence(tmp_path):
    events_path = tmp_path / "events.jsonl"
    events_path.write_text("garbage\n")
    assert EventEmitter(RealClock(), str(events_path)).emit("x")["sequence"] == 1


def test_lock_transitions_are_audited(tmp_path, clock):
    events_path = tmp_path / "events.jsonl"
    emitter = EventEmitter(clock, str(events_path))
    locks = PortLockRegistry(clock, observers=[emitter.lock_observer])

    locks.try_lock("/dev/ttyUSB0", "monitor")
    locks.try_lock("/dev/ttyUSB0", "upload")
    locks.release("/dev/ttyUSB0")

    records = [json.loads(l) for l in events_path.read_text().splitlines()]
    assert [r["type"] for r in records] == ["lock_locked", "lock_denied", "lock_released"]
    assert [r["level"] for r in records] == ["info", "warning", "info"]
    assert records[1]["data"]["holder"] == "monitor"
