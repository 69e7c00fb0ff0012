"""
Execution log: append-only JSONL sink for everything the control plane emits.
Advisory only. Nothing in the core reads it back.
"""

from __future__ import annotations

from pathlib import Path

from taskgate.event_bus import EventBus, TaskGateEvent

MAX_PAYLOAD_OUTPUT = 2000


class ExecutionLog:
    """
    Subscribes to an EventBus and writes every event to an
    append-only JSONL file.
    """

    def __init__(self, file_path: Path | str, event_bus: EventBus):
        self.file_path = Path(file_path)
        self.event_bus = event_bus

        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        self.event_bus.subscribe(self.log_event)

    def log_event(self, event: TaskGateEvent) -> None:
        """Append one event as a JSON line, truncating oversized command output."""
        output = event.payload.get("output")
        if isinstance(output, str) and len(output) > MAX_PAYLOAD_OUTPUT:
            payload = {**event.payload, "output": output[:MAX_PAYLOAD_OUTPUT] + "... (truncated)"}
            event = event.model_copy(update={"payload": payload})

        with open(self.file_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")

    def close(self) -> None:
        self.event_bus.unsubscribe(self.log_event)
