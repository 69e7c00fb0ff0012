"""
TASKGATE event bus: the session's output channel.

Engines report what they did here instead of writing anywhere themselves.
Sinks (the execution log, a UI, tests) subscribe to every event or to a
subset of event types. Event names are a closed set, so a misspelled
name fails at the emit site instead of vanishing from the log.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Literal, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, Field


class EventType(str, Enum):
    # planning
    PLAN_CREATED = "plan_created"
    PLANNER_FALLBACK = "planner_fallback"
    # execution
    PLAN_STARTED = "plan_started"
    PLAN_FINISHED = "plan_finished"
    TASK_STARTED = "task_started"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"
    # approvals
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_RESOLVED = "approval_resolved"
    APPROVAL_TIMED_OUT = "approval_timed_out"
    APPROVALS_CANCELLED = "approvals_cancelled"
    # terminal
    COMMAND_EXECUTED = "command_executed"
    # rate limiting
    RATE_LIMIT_ADMITTED = "rate_limit_admitted"
    RATE_LIMIT_WAIT = "rate_limit_wait"
    RATE_LIMIT_PROGRESS = "rate_limit_progress"
    USAGE_RECORDED = "usage_recorded"
    # file context
    CACHE_HIT = "cache_hit"
    CACHE_STALE = "cache_stale"
    CACHE_EVICTED = "cache_evicted"


Component = Literal["planner", "controller", "decisions", "terminal", "rate_limiter", "file_tracker"]

Subscriber = Callable[["TaskGateEvent"], None]


class TaskGateEvent(BaseModel):
    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_type: EventType
    component: Component
    payload: Dict[str, Any]

    @property
    def task_id(self) -> Optional[str]:
        return self.payload.get("task_id")


class EventBus:
    """A lightweight, synchronous event bus. Delivery is in subscription order."""

    def __init__(self):
        self._subscribers: List[Tuple[Subscriber, Optional[frozenset]]] = []

    def subscribe(
        self,
        callback: Subscriber,
        event_types: Optional[Iterable[Union[EventType, str]]] = None,
    ) -> None:
        """Register a callback for every event, or only for `event_types`."""
        wanted = frozenset(EventType(t) for t in event_types) if event_types is not None else None
        self._subscribers.append((callback, wanted))

    def unsubscribe(self, callback: Subscriber) -> None:
        self._subscribers = [(cb, wanted) for cb, wanted in self._subscribers if cb != callback]

    def emit(self, event_type: Union[EventType, str], component: Component, payload: Dict[str, Any]) -> TaskGateEvent:
        """Build an event and hand it to each interested subscriber.

        Raises:
            pydantic.ValidationError: unknown event type or component.
        """
        event = TaskGateEvent(event_type=event_type, component=component, payload=payload)

        for subscriber, wanted in list(self._subscribers):
            if wanted is not None and event.event_type not in wanted:
                continue
            try:
                subscriber(event)
            except Exception as e:
                # A broken sink must never stop the engine
                logger.warning(f"[BUS] Subscriber failed on {event.event_type.value}: {e}")
        return event
