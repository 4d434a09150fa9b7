"""
通知渠道
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List


logger = logging.getLogger(__name__)


@dataclass
class Notification:
    """通知消息"""
    channel: str
    title: str
    body: Dict[str, Any] = field(default_factory=dict)
    recipients: List[str] = field(default_factory=list)
    execution_id: str = ""
    created_at: datetime = field(default_factory=datetime.utcnow)


class NotificationChannel(ABC):
    """通知渠道接口"""

    @abstractmethod
    async def send(self, notification: Notification) -> str:
        """发送通知，返回消息ID；失败时抛出 NotificationError"""
        pass


class InMemoryNotificationChannel(NotificationChannel):
    """内存通知渠道，记录已发送消息"""

    def __init__(self):
        self.sent: List[Notification] = []

    async def send(self, notification: Notification) -> str:
        self.sent.append(notification)
        logger.info(
            f"Notification '{notification.title}' sent via {notification.channel}",
            extra={"execution_id": notification.execution_id}
        )
        return f"{notification.channel}-{len(self.sent)}"
