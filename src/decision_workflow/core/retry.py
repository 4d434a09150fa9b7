"""
重试策略与失败分类
"""
import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Tuple

from ..exceptions import (
    ConnectorUnavailableError, DslValidationError, NodeExecutionError, RiskBlockedError
)
from ..models.execution import FailureCategory
from ..models.workflow import RuntimePolicy


logger = logging.getLogger(__name__)


class RetryStrategy(Enum):
    """退避策略"""
    FIXED_DELAY = "fixed"
    LINEAR_BACKOFF = "linear"
    EXPONENTIAL_BACKOFF = "exponential"


def default_retryable(failure: Any) -> bool:
    """默认可重试判定：执行器声明可重试，或连接器不可用"""
    if getattr(failure, "retryable", False):
        return True
    return getattr(failure, "failure_category", None) == FailureCategory.CONNECTOR_UNAVAILABLE


@dataclass(frozen=True)
class RetryPolicy:
    """重试策略，由编排器评估"""
    max_retries: int = 0
    backoff_ms: int = 0
    strategy: RetryStrategy = RetryStrategy.FIXED_DELAY
    backoff_factor: float = 2.0
    max_backoff_ms: int = 60000
    jitter: bool = False
    retry_on_timeout: bool = True
    retryable: Callable[[Any], bool] = field(default=default_retryable)

    @classmethod
    def from_runtime_policy(
        cls,
        policy: RuntimePolicy,
        run_policy: Mapping[str, Any] = None
    ) -> 'RetryPolicy':
        """根据节点运行策略与工作流级运行策略构建"""
        run_policy = run_policy or {}
        try:
            strategy = RetryStrategy(str(run_policy.get("retryStrategy", "fixed")).lower())
        except ValueError:
            logger.warning(f"Unknown retry strategy: {run_policy.get('retryStrategy')}, using fixed")
            strategy = RetryStrategy.FIXED_DELAY
        return cls(
            max_retries=max(0, policy.max_retries),
            backoff_ms=max(0, policy.retry_backoff_ms),
            strategy=strategy,
            backoff_factor=float(run_policy.get("backoffFactor", 2.0)),
            max_backoff_ms=int(run_policy.get("maxBackoffMs", 60000)),
            jitter=bool(run_policy.get("retryJitter", False)),
            retry_on_timeout=policy.retry_on_timeout,
        )

    def is_retryable(self, failure: Any) -> bool:
        """判断失败信号是否可重试"""
        if getattr(failure, "failure_category", None) == FailureCategory.TIMEOUT:
            return self.retry_on_timeout
        return self.retryable(failure)

    def should_retry(self, failure: Any, retries_done: int) -> bool:
        return retries_done < self.max_retries and self.is_retryable(failure)

    def delay_seconds(self, retries_done: int) -> float:
        """计算第 retries_done 次重试前的等待时间（秒）"""
        base = self.backoff_ms / 1000.0
        if self.strategy == RetryStrategy.LINEAR_BACKOFF:
            delay = base * (retries_done + 1)
        elif self.strategy == RetryStrategy.EXPONENTIAL_BACKOFF:
            delay = base * (self.backoff_factor ** retries_done)
        else:
            delay = base

        # 限制最大延迟
        delay = min(delay, self.max_backoff_ms / 1000.0)

        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * 0.1)
        return delay

    async def wait(self, retries_done: int):
        delay = self.delay_seconds(retries_done)
        if delay > 0:
            await asyncio.sleep(delay)


def classify_failure(error: BaseException) -> Tuple[FailureCategory, bool]:
    """
    将异常映射为失败分类

    Returns:
        (失败分类, 是否可重试)
    """
    if isinstance(error, NodeExecutionError):
        category = error.category or FailureCategory.EXECUTOR
        return category, error.retryable
    if isinstance(error, ConnectorUnavailableError):
        return FailureCategory.CONNECTOR_UNAVAILABLE, True
    if isinstance(error, asyncio.TimeoutError):
        return FailureCategory.TIMEOUT, True
    if isinstance(error, RiskBlockedError):
        return FailureCategory.RISK_BLOCKED, False
    if isinstance(error, DslValidationError):
        return FailureCategory.VALIDATION, False
    return FailureCategory.EXECUTOR, False
