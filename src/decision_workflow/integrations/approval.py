"""
人工审批能力
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from ..exceptions import ApprovalNotFoundError


logger = logging.getLogger(__name__)


class ApprovalDecision(Enum):
    """审批结论"""
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


@dataclass
class ApprovalRequest:
    """审批请求"""
    execution_id: str
    node_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))
    decision: Optional[ApprovalDecision] = None
    comment: Optional[str] = None
    decided_by: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    decided_at: Optional[datetime] = None

    @property
    def approved(self) -> bool:
        return self.decision == ApprovalDecision.APPROVED


class ApprovalGateway(ABC):
    """审批网关接口"""

    @abstractmethod
    async def request(self, execution_id: str, node_id: str, payload: Dict[str, Any]) -> ApprovalRequest:
        """发起审批"""
        pass

    @abstractmethod
    async def wait_for_decision(self, request_id: str) -> ApprovalRequest:
        """等待审批结论（无超时）"""
        pass

    @abstractmethod
    async def resolve(
        self,
        request_id: str,
        approved: bool,
        comment: str = None,
        decided_by: str = None
    ) -> ApprovalRequest:
        """提交审批结论"""
        pass

    @abstractmethod
    async def discard(self, request_id: str, reason: str = None):
        """撤销未决审批（执行被取消）"""
        pass


class InMemoryApprovalGateway(ApprovalGateway):
    """内存审批网关"""

    def __init__(self, auto_decision: Optional[bool] = None):
        # auto_decision 非空时立即自动审批（离线运行）
        self.auto_decision = auto_decision
        self.requests: Dict[str, ApprovalRequest] = {}
        self._waiters: Dict[str, asyncio.Future] = {}

    async def request(self, execution_id: str, node_id: str, payload: Dict[str, Any]) -> ApprovalRequest:
        approval = ApprovalRequest(execution_id=execution_id, node_id=node_id, payload=payload)
        self.requests[approval.id] = approval
        self._waiters[approval.id] = asyncio.get_running_loop().create_future()
        logger.info(f"Approval requested for node {node_id} in execution {execution_id}: {approval.id}")

        if self.auto_decision is not None:
            await self.resolve(approval.id, self.auto_decision, comment="auto", decided_by="system")
        return approval

    async def wait_for_decision(self, request_id: str) -> ApprovalRequest:
        waiter = self._waiters.get(request_id)
        if waiter is None:
            raise ApprovalNotFoundError(f"Approval request {request_id} not found")
        return await asyncio.shield(waiter)

    async def resolve(
        self,
        request_id: str,
        approved: bool,
        comment: str = None,
        decided_by: str = None
    ) -> ApprovalRequest:
        approval = self.requests.get(request_id)
        if approval is None:
            raise ApprovalNotFoundError(f"Approval request {request_id} not found")
        if approval.decision is not None:
            return approval

        approval.decision = ApprovalDecision.APPROVED if approved else ApprovalDecision.REJECTED
        approval.comment = comment
        approval.decided_by = decided_by
        approval.decided_at = datetime.utcnow()

        waiter = self._waiters.get(request_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(approval)
        logger.info(f"Approval {request_id} resolved: {approval.decision.value}")
        return approval

    async def discard(self, request_id: str, reason: str = None):
        approval = self.requests.get(request_id)
        if approval is None or approval.decision is not None:
            return

        del self.requests[request_id]
        waiter = self._waiters.pop(request_id, None)
        if waiter is not None and not waiter.done():
            waiter.cancel()
        logger.info(f"Approval {request_id} discarded: {reason or 'canceled'}")

    def pending(self, execution_id: str = None) -> List[ApprovalRequest]:
        """待审批请求"""
        return [
            approval for approval in self.requests.values()
            if approval.decision is None and (execution_id is None or approval.execution_id == execution_id)
        ]
