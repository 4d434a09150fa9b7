"""
进程内事件总线

执行事件与定义事件都经由这里分发。订阅按主题模式匹配（fnmatch 语法，
例如 ``workflow.*``），同一订阅者按发布顺序收到事件。
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from fnmatch import fnmatchcase
from typing import Any, Callable, Dict, List, Tuple


logger = logging.getLogger(__name__)


@dataclass
class Event:
    """事件对象"""
    topic: str
    payload: Any
    timestamp: datetime = field(default_factory=datetime.utcnow)
    headers: Dict[str, str] = field(default_factory=dict)


class EventBus:
    """进程内事件总线"""

    def __init__(self):
        # (主题模式, 处理函数)，按订阅顺序
        self._subscriptions: List[Tuple[str, Callable]] = []
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, payload: Any, headers: Dict[str, str] = None):
        """发布事件，逐个通知匹配的订阅者"""
        event = Event(topic=topic, payload=payload, headers=headers or {})

        async with self._lock:
            handlers = [handler for pattern, handler in self._subscriptions if fnmatchcase(topic, pattern)]

        for handler in handlers:
            await self._notify_subscriber(handler, event)

        logger.debug(f"Published event to topic '{topic}' with {len(handlers)} subscribers")

    async def subscribe(self, pattern: str, handler: Callable):
        """订阅主题（支持通配符）"""
        async with self._lock:
            self._subscriptions.append((pattern, handler))

        logger.info(f"Subscribed to topic '{pattern}'")

    async def unsubscribe(self, pattern: str, handler: Callable):
        """取消订阅"""
        async with self._lock:
            self._subscriptions = [
                (p, h) for p, h in self._subscriptions if not (p == pattern and h == handler)
            ]

        logger.info(f"Unsubscribed from topic '{pattern}'")

    def subscriber_count(self, topic: str) -> int:
        """匹配指定主题的订阅数"""
        return sum(1 for pattern, _ in self._subscriptions if fnmatchcase(topic, pattern))

    async def _notify_subscriber(self, handler: Callable, event: Event):
        """通知订阅者，订阅者异常不影响发布方"""
        try:
            result = handler(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Error notifying subscriber for topic '{event.topic}': {e}", exc_info=True)
