"""Execution telemetry and reference consistency validation"""

from .events import (
    EXECUTION_EVENTS_TOPIC, ExecutionEvent, ExecutionEventType,
    ExecutionEventPublisher, ExecutionEventRecorder
)
from .consistency import ConsistencyValidator, ConsistencyIssue, ConsistencyReport

__all__ = [
    "EXECUTION_EVENTS_TOPIC",
    "ExecutionEvent",
    "ExecutionEventType",
    "ExecutionEventPublisher",
    "ExecutionEventRecorder",
    "ConsistencyValidator",
    "ConsistencyIssue",
    "ConsistencyReport",
]
