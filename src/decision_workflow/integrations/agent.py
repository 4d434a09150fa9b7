"""
智能体调用能力
"""
import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Tuple, Union

from ..exceptions import AgentInvocationError


logger = logging.getLogger(__name__)


class AgentInvoker(ABC):
    """
    智能体调用接口

    结构化请求进，结构化 JSON 出；模型协议由实现方决定。
    """

    @abstractmethod
    async def invoke(self, agent_code: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """调用智能体"""
        pass


AgentResponse = Union[Dict[str, Any], Callable[[Dict[str, Any]], Dict[str, Any]], Exception]

_DEFAULT_STANCES = ("BULLISH", "BEARISH", "NEUTRAL")


class MockAgentInvoker(AgentInvoker):
    """模拟智能体调用（测试与离线运行）"""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.responses: Dict[str, List[AgentResponse]] = {}
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def register(self, agent_code: str, *responses: AgentResponse):
        """
        为智能体登记响应序列

        依次消费，最后一个响应会被重复使用；响应可以是 dict、
        接收请求的可调用对象或需要抛出的异常。
        """
        self.responses[agent_code] = list(responses)

    async def invoke(self, agent_code: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((agent_code, payload))
        if self.delay > 0:
            await asyncio.sleep(self.delay)

        scripted = self.responses.get(agent_code)
        if not scripted:
            return self._default_response(agent_code)

        response = scripted.pop(0) if len(scripted) > 1 else scripted[0]
        if isinstance(response, Exception):
            raise response
        if callable(response):
            response = response(payload)
        if not isinstance(response, dict):
            raise AgentInvocationError(agent_code, "response is not a JSON object")
        return dict(response)

    def _default_response(self, agent_code: str) -> Dict[str, Any]:
        # 由智能体编码确定性地生成立场
        digest = int(hashlib.sha256(agent_code.encode("utf-8")).hexdigest(), 16)
        stance = _DEFAULT_STANCES[digest % len(_DEFAULT_STANCES)]
        confidence = 50 + digest % 41
        logger.debug(f"Mock agent {agent_code} answered {stance} ({confidence})")
        return {
            "agentCode": agent_code,
            "stance": stance,
            "confidence": confidence,
            "summary": f"{agent_code} leans {stance.lower()}",
            "keyPoints": [],
        }

    def call_count(self, agent_code: str = None) -> int:
        if agent_code is None:
            return len(self.calls)
        return sum(1 for code, _ in self.calls if code == agent_code)
