"""
实验模型
"""
import math
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Optional
from uuid import uuid4


class ExperimentStatus(Enum):
    """实验状态"""
    DRAFT = "DRAFT"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    ABORTED = "ABORTED"


class Variant(Enum):
    """实验分组"""
    A = "A"
    B = "B"


@dataclass
class VariantMetrics:
    """分组指标，坏例率与耗时分位基于滚动窗口"""
    window_size: int = 50
    total_executions: int = 0
    success_count: int = 0
    failure_count: int = 0
    bad_case_count: int = 0
    total_duration_ms: int = 0
    recent_outcomes: Deque[bool] = field(default_factory=deque)  # True 表示坏例
    recent_durations: Deque[int] = field(default_factory=deque)

    def record(self, success: bool, duration_ms: int, bad_case: bool):
        """记录一次执行结果"""
        self.total_executions += 1
        if success:
            self.success_count += 1
        else:
            self.failure_count += 1
        if bad_case:
            self.bad_case_count += 1
        self.total_duration_ms += max(0, int(duration_ms))

        self.recent_outcomes.append(bad_case)
        self.recent_durations.append(max(0, int(duration_ms)))
        while len(self.recent_outcomes) > self.window_size:
            self.recent_outcomes.popleft()
        while len(self.recent_durations) > self.window_size:
            self.recent_durations.popleft()

    @property
    def success_rate(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.success_count / self.total_executions

    @property
    def rolling_sample_size(self) -> int:
        return len(self.recent_outcomes)

    @property
    def rolling_bad_case_rate(self) -> float:
        if not self.recent_outcomes:
            return 0.0
        return sum(1 for bad in self.recent_outcomes if bad) / len(self.recent_outcomes)

    @property
    def avg_duration_ms(self) -> float:
        if self.total_executions == 0:
            return 0.0
        return self.total_duration_ms / self.total_executions

    @property
    def p95_duration_ms(self) -> int:
        # 最近窗口内的 nearest-rank 分位
        if not self.recent_durations:
            return 0
        ordered = sorted(self.recent_durations)
        rank = max(1, math.ceil(0.95 * len(ordered)))
        return ordered[rank - 1]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalExecutions": self.total_executions,
            "successCount": self.success_count,
            "failureCount": self.failure_count,
            "badCaseCount": self.bad_case_count,
            "successRate": round(self.success_rate, 4),
            "badCaseRate": round(self.rolling_bad_case_rate, 4),
            "avgDurationMs": round(self.avg_duration_ms, 2),
            "p95DurationMs": self.p95_duration_ms,
        }


@dataclass
class Experiment:
    """A/B 实验"""
    workflow_definition_id: str
    variant_a_version_id: str
    variant_b_version_id: str
    traffic_split_percent: int = 50
    id: str = field(default_factory=lambda: str(uuid4()))
    experiment_code: str = ""
    status: ExperimentStatus = ExperimentStatus.DRAFT
    bad_case_threshold: float = 0.2
    auto_stop_enabled: bool = True
    min_sample_size: int = 10
    max_executions: Optional[int] = None
    current_executions_a: int = 0
    current_executions_b: int = 0
    metrics_a: VariantMetrics = field(default_factory=VariantMetrics)
    metrics_b: VariantMetrics = field(default_factory=VariantMetrics)
    review_required: bool = False
    review_reason: Optional[str] = None
    winner_variant: Optional[Variant] = None
    conclusion_summary: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    def version_for(self, variant: Variant) -> str:
        return self.variant_b_version_id if variant == Variant.B else self.variant_a_version_id

    def metrics_for(self, variant: Variant) -> VariantMetrics:
        return self.metrics_b if variant == Variant.B else self.metrics_a

    @property
    def total_executions(self) -> int:
        return self.current_executions_a + self.current_executions_b

    @property
    def metrics_snapshot(self) -> Dict[str, Any]:
        """指标快照"""
        return {
            "variantA": self.metrics_a.to_dict(),
            "variantB": self.metrics_b.to_dict(),
            "currentExecutionsA": self.current_executions_a,
            "currentExecutionsB": self.current_executions_b,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "experimentCode": self.experiment_code,
            "workflowDefinitionId": self.workflow_definition_id,
            "variantAVersionId": self.variant_a_version_id,
            "variantBVersionId": self.variant_b_version_id,
            "trafficSplitPercent": self.traffic_split_percent,
            "status": self.status.value,
            "badCaseThreshold": self.bad_case_threshold,
            "autoStopEnabled": self.auto_stop_enabled,
            "maxExecutions": self.max_executions,
            "reviewRequired": self.review_required,
            "reviewReason": self.review_reason,
            "winnerVariant": self.winner_variant.value if self.winner_variant else None,
            "metricsSnapshot": self.metrics_snapshot,
        }
