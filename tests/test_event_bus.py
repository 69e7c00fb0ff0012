import json

import pytest
from pydantic import ValidationError

from taskgate.audit_logger import ExecutionLog
from taskgate.event_bus import EventBus, EventType, TaskGateEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[TaskGateEvent] = []

    def dummy_subscriber(event: TaskGateEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(
        event_type="task_started",
        component="controller",
        payload={"task_id": "t-1", "type": "analysis"}
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type is EventType.TASK_STARTED
    assert event.event_type == "task_started"
    assert event.component == "controller"
    assert event.task_id == "t-1"

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_unknown_event_names_are_rejected():
    bus = EventBus()
    with pytest.raises(ValidationError):
        bus.emit("task_finished", "controller", {})
    with pytest.raises(ValidationError):
        bus.emit(EventType.TASK_FAILED, "auditor", {})


def test_subscriber_can_filter_event_types():
    bus = EventBus()
    approvals = []
    bus.subscribe(approvals.append, event_types=[EventType.APPROVAL_REQUESTED, "approval_resolved"])

    bus.emit(EventType.APPROVAL_REQUESTED, "decisions", {"decision_id": "d-1"})
    bus.emit(EventType.COMMAND_EXECUTED, "terminal", {"command": "ls"})
    bus.emit(EventType.APPROVAL_RESOLVED, "decisions", {"decision_id": "d-1", "approved": True})

    assert [e.event_type for e in approvals] == ["approval_requested", "approval_resolved"]


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("sink down")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.emit(EventType.CACHE_HIT, "file_tracker", {})

    assert len(received) == 1


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []
    bus.subscribe(received.append)
    bus.unsubscribe(received.append)
    bus.emit(EventType.CACHE_HIT, "file_tracker", {})
    assert received == []


def test_execution_log_writes_jsonl(tmp_path):
    bus = EventBus()
    log = ExecutionLog(tmp_path / "logs" / "execution.jsonl", bus)

    bus.emit(EventType.COMMAND_EXECUTED, "terminal", {"command": "ls", "output": "x" * 5000})
    bus.emit(EventType.PLAN_CREATED, "planner", {"tasks": 2})
    log.close()
    bus.emit(EventType.PLAN_FINISHED, "controller", {})

    lines = (tmp_path / "logs" / "execution.jsonl").read_text().splitlines()
    assert len(lines) == 2

    first = json.loads(lines[0])
    assert first["event_type"] == "command_executed"
    assert first["component"] == "terminal"
    assert first["payload"]["output"].endswith("(truncated)")
    assert len(first["payload"]["output"]) < 5000
    assert json.loads(lines[1])["payload"] == {"tasks": 2}
