"""
实验流量路由
"""
import asyncio
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from ..exceptions import ExperimentError, ExperimentNotFoundError
from ..models.experiment import Experiment, ExperimentStatus, Variant
from ..storage.repository import ExperimentRepository, InMemoryExperimentRepository


logger = logging.getLogger(__name__)

BUCKET_COUNT = 100

# 结论建议阈值
MIN_EVALUATION_SAMPLES = 20
SUCCESS_RATE_MARGIN = 0.1
DURATION_MARGIN_MS = 1000


@dataclass(frozen=True)
class RouteDecision:
    """路由结果"""
    experiment_id: str
    variant: Variant
    version_id: str
    bucket: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "experimentId": self.experiment_id,
            "variant": self.variant.value,
            "versionId": self.version_id,
            "bucket": self.bucket,
        }


def traffic_bucket(experiment_id: str, routing_key: str) -> int:
    """以实验ID加盐的 SHA-256 哈希映射到 [0, 100)"""
    digest = hashlib.sha256(f"{experiment_id}:{routing_key}".encode("utf-8")).hexdigest()
    return int(digest, 16) % BUCKET_COUNT


def select_variant(experiment: Experiment, routing_key: str) -> Variant:
    """确定性分组：bucket < 分流比例 -> B，否则 A"""
    bucket = traffic_bucket(experiment.id, routing_key)
    return Variant.B if bucket < experiment.traffic_split_percent else Variant.A


class ExperimentRouter:
    """实验路由器"""

    def __init__(self, repository: ExperimentRepository = None):
        self.repository = repository or InMemoryExperimentRepository()
        self._lock = asyncio.Lock()

    async def create_experiment(
        self,
        workflow_definition_id: str,
        variant_a_version_id: str,
        variant_b_version_id: str,
        traffic_split_percent: int = 50,
        experiment_code: str = "",
        bad_case_threshold: float = 0.2,
        auto_stop_enabled: bool = True,
        min_sample_size: int = 10,
        max_executions: Optional[int] = None
    ) -> Experiment:
        """创建实验（DRAFT）"""
        if not 0 <= traffic_split_percent <= 100:
            raise ExperimentError(f"traffic_split_percent must be within [0, 100], got {traffic_split_percent}")
        if not 0 <= bad_case_threshold <= 1:
            raise ExperimentError(f"bad_case_threshold must be within [0, 1], got {bad_case_threshold}")
        if max_executions is not None and max_executions <= 0:
            raise ExperimentError(f"max_executions must be positive, got {max_executions}")

        experiment = Experiment(
            workflow_definition_id=workflow_definition_id,
            variant_a_version_id=variant_a_version_id,
            variant_b_version_id=variant_b_version_id,
            traffic_split_percent=traffic_split_percent,
            bad_case_threshold=bad_case_threshold,
            auto_stop_enabled=auto_stop_enabled,
            min_sample_size=max(1, min_sample_size),
            max_executions=max_executions,
        )
        experiment.experiment_code = experiment_code or f"EXP-{experiment.id[:8]}"
        await self.repository.save(experiment)
        logger.info(f"Experiment {experiment.experiment_code} created for workflow {workflow_definition_id}")
        return experiment

    async def get(self, experiment_id: str) -> Experiment:
        experiment = await self.repository.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(f"Experiment not found: {experiment_id}")
        return experiment

    # 生命周期

    async def start(self, experiment_id: str) -> Experiment:
        async with self._lock:
            experiment = await self.get(experiment_id)
            if experiment.status not in (ExperimentStatus.DRAFT, ExperimentStatus.PAUSED):
                raise ExperimentError(f"Cannot start experiment in state {experiment.status.value}")
            experiment.status = ExperimentStatus.RUNNING
            experiment.started_at = experiment.started_at or datetime.utcnow()
            await self.repository.save(experiment)
        logger.info(f"Experiment {experiment.experiment_code} started")
        return experiment

    async def pause(self, experiment_id: str) -> Experiment:
        async with self._lock:
            experiment = await self.get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                raise ExperimentError(f"Cannot pause experiment in state {experiment.status.value}")
            experiment.status = ExperimentStatus.PAUSED
            await self.repository.save(experiment)
        return experiment

    async def abort(self, experiment_id: str, reason: str = None) -> Experiment:
        async with self._lock:
            experiment = await self.get(experiment_id)
            if experiment.status == ExperimentStatus.COMPLETED:
                raise ExperimentError("Completed experiment cannot be aborted")
            experiment.status = ExperimentStatus.ABORTED
            experiment.ended_at = datetime.utcnow()
            if reason:
                experiment.conclusion_summary = reason
            await self.repository.save(experiment)
        logger.warning(f"Experiment {experiment.experiment_code} aborted: {reason}")
        return experiment

    async def conclude(self, experiment_id: str, winner: Variant, summary: str = None) -> Experiment:
        """选定胜出分组并结束实验"""
        async with self._lock:
            experiment = await self.get(experiment_id)
            if experiment.status not in (ExperimentStatus.RUNNING, ExperimentStatus.PAUSED):
                raise ExperimentError(f"Cannot conclude experiment in state {experiment.status.value}")
            experiment.status = ExperimentStatus.COMPLETED
            experiment.ended_at = datetime.utcnow()
            experiment.winner_variant = winner
            experiment.conclusion_summary = summary
            await self.repository.save(experiment)
        logger.info(f"Experiment {experiment.experiment_code} concluded, winner {winner.value}")
        return experiment

    # 路由与指标

    async def route(self, experiment_id: str, routing_key: str) -> RouteDecision:
        """
        为一次执行选择分组

        Args:
            experiment_id: 实验ID
            routing_key: 幂等键，缺省时为执行ID

        Returns:
            RouteDecision: 分组及对应版本
        """
        async with self._lock:
            experiment = await self.get(experiment_id)
            if experiment.status != ExperimentStatus.RUNNING:
                raise ExperimentError(f"Experiment {experiment.experiment_code} is not running")
            if experiment.max_executions and experiment.total_executions >= experiment.max_executions:
                raise ExperimentError(
                    f"Experiment {experiment.experiment_code} reached max executions {experiment.max_executions}"
                )

            bucket = traffic_bucket(experiment.id, routing_key)
            variant = Variant.B if bucket < experiment.traffic_split_percent else Variant.A
            if variant == Variant.B:
                experiment.current_executions_b += 1
            else:
                experiment.current_executions_a += 1
            await self.repository.save(experiment)

        decision = RouteDecision(experiment.id, variant, experiment.version_for(variant), bucket)
        logger.debug(f"Experiment {experiment.experiment_code}: routed to {variant.value} (bucket {bucket})")
        return decision

    async def record_outcome(
        self,
        experiment_id: str,
        variant: Variant,
        success: bool,
        duration_ms: int,
        bad_case: bool = None
    ) -> bool:
        """
        记录执行结果并检查自动止损

        Returns:
            是否因本次结果标记为待复核
        """
        async with self._lock:
            experiment = await self.get(experiment_id)
            metrics = experiment.metrics_for(variant)
            metrics.record(success, duration_ms, (not success) if bad_case is None else bad_case)

            flagged = False
            if experiment.auto_stop_enabled and not experiment.review_required:
                if (metrics.rolling_sample_size >= experiment.min_sample_size
                        and metrics.rolling_bad_case_rate > experiment.bad_case_threshold):
                    experiment.review_required = True
                    experiment.review_reason = (
                        f"Variant {variant.value} bad case rate {metrics.rolling_bad_case_rate:.1%} "
                        f"exceeds threshold {experiment.bad_case_threshold:.0%} "
                        f"(sample={metrics.rolling_sample_size})"
                    )
                    flagged = True
                    logger.warning(f"Experiment {experiment.experiment_code}: {experiment.review_reason}")
            await self.repository.save(experiment)
        return flagged

    async def evaluate(self, experiment_id: str) -> Dict[str, Any]:
        """基于当前指标给出结论建议"""
        experiment = await self.get(experiment_id)
        a, b = experiment.metrics_a, experiment.metrics_b
        total = a.total_executions + b.total_executions

        recommendation = "CONTINUE"
        reason = f"Not enough samples ({total}/{MIN_EVALUATION_SAMPLES})"
        if total >= MIN_EVALUATION_SAMPLES:
            success_delta = b.success_rate - a.success_rate
            duration_delta = b.avg_duration_ms - a.avg_duration_ms
            if abs(success_delta) > SUCCESS_RATE_MARGIN:
                recommendation = "PROMOTE_B" if success_delta > 0 else "KEEP_A"
                reason = f"Success rate delta {success_delta:+.1%}"
            elif abs(duration_delta) > DURATION_MARGIN_MS:
                recommendation = "PROMOTE_B" if duration_delta < 0 else "KEEP_A"
                reason = f"Average duration delta {duration_delta:+.0f}ms"
            else:
                recommendation = "NO_SIGNIFICANT_DIFFERENCE"
                reason = "Variants perform within tolerance"

        return {
            "experimentId": experiment.id,
            "experimentCode": experiment.experiment_code,
            "status": experiment.status.value,
            "reviewRequired": experiment.review_required,
            "recommendation": recommendation,
            "reason": reason,
            "metrics": experiment.metrics_snapshot,
        }
