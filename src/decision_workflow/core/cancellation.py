"""
协作式取消令牌
"""
import asyncio
from typing import Optional

from ..exceptions import ExecutionCancelledError


class CancellationToken:
    """取消令牌，贯穿执行及其所有节点任务"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = None):
        """发出取消信号（幂等）"""
        if not self._event.is_set():
            self.reason = reason or "cancelled"
            self._event.set()

    def raise_if_cancelled(self):
        """在挂起点检查取消状态"""
        if self._event.is_set():
            raise ExecutionCancelledError(self.reason or "cancelled")

    async def wait(self):
        """等待取消信号"""
        await self._event.wait()
