"""
通知执行器
"""
import logging
from typing import Any, Dict

from ..core.expressions import read_value_by_path
from ..exceptions import NotificationError
from ..integrations.notifications import Notification, NotificationChannel
from ..models.frozen import thaw
from ..models.workflow import NodeType
from .base import NodeExecutionContext, NodeExecutor, NodeResult


logger = logging.getLogger(__name__)


class NotifyNodeExecutor(NodeExecutor):
    """通知执行器（终端节点，仅产生副作用）"""

    node_types = (NodeType.NOTIFY,)
    output_fields = frozenset({"notificationId", "channel", "delivered", "_meta"})

    def __init__(self, channel: NotificationChannel):
        self.channel = channel

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        config = context.config
        data = thaw(context.input)

        fields = config.get("fields")
        if fields and isinstance(data, dict):
            body: Dict[str, Any] = {path: read_value_by_path(data, path) for path in fields}
        else:
            body = data if isinstance(data, dict) else {"payload": data}

        notification = Notification(
            channel=config.get("channel", "default"),
            title=config.get("title", context.node.name or context.node.id),
            body=body,
            recipients=list(config.get("recipients", [])),
            execution_id=context.execution_id,
        )
        try:
            notification_id = await self.channel.send(notification)
        except NotificationError as e:
            logger.error(f"Notification failed for node {context.node.id}: {e}")
            return NodeResult.failed(str(e))

        return NodeResult.success({
            "notificationId": notification_id,
            "channel": notification.channel,
            "delivered": True,
            "_meta": {"executor": self.name},
        })
