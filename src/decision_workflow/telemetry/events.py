"""
执行事件发布
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..integrations.event_bus import Event, EventBus


logger = logging.getLogger(__name__)

EXECUTION_EVENTS_TOPIC = "workflow.execution.events"


class ExecutionEventType(Enum):
    """执行事件类型"""
    WORKFLOW_STARTED = "WORKFLOW_STARTED"
    WORKFLOW_COMPLETED = "WORKFLOW_COMPLETED"
    WORKFLOW_FAILED = "WORKFLOW_FAILED"
    WORKFLOW_CANCELED = "WORKFLOW_CANCELED"
    DAG_LAYERS_RESOLVED = "DAG_LAYERS_RESOLVED"

    NODE_STARTED = "NODE_STARTED"
    NODE_SUCCEEDED = "NODE_SUCCEEDED"
    NODE_FAILED = "NODE_FAILED"
    NODE_RETRY = "NODE_RETRY"
    NODE_SKIPPED = "NODE_SKIPPED"
    NODE_WAITING = "NODE_WAITING"


@dataclass
class ExecutionEvent:
    """执行事件"""
    execution_id: str
    event_type: ExecutionEventType
    node_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "eventType": self.event_type.value,
            "nodeId": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


class ExecutionEventPublisher:
    """执行事件发布器"""

    def __init__(self, event_bus: EventBus, topic: str = EXECUTION_EVENTS_TOPIC):
        self.event_bus = event_bus
        self.topic = topic

    async def publish(
        self,
        execution_id: str,
        event_type: ExecutionEventType,
        node_id: str = None,
        data: Dict[str, Any] = None
    ) -> ExecutionEvent:
        """发布执行事件"""
        event = ExecutionEvent(
            execution_id=execution_id,
            event_type=event_type,
            node_id=node_id,
            data=data or {}
        )
        await self.event_bus.publish(
            self.topic,
            event,
            headers={"eventType": event_type.value, "executionId": execution_id}
        )
        return event


class ExecutionEventRecorder:
    """订阅并保存执行事件（测试与命令行输出使用）"""

    def __init__(self):
        self.events: List[ExecutionEvent] = []

    async def attach(self, event_bus: EventBus, topic: str = EXECUTION_EVENTS_TOPIC):
        await event_bus.subscribe(topic, self.handle)

    def handle(self, event: Event):
        self.events.append(event.payload)

    def of_type(self, event_type: ExecutionEventType, execution_id: str = None) -> List[ExecutionEvent]:
        return [
            event for event in self.events
            if event.event_type == event_type and (execution_id is None or event.execution_id == execution_id)
        ]

    def types(self, execution_id: str = None) -> List[str]:
        return [
            event.event_type.value for event in self.events
            if execution_id is None or event.execution_id == execution_id
        ]
