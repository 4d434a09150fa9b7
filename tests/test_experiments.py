"""
实验流量路由测试
"""
import pytest

from decision_workflow.core.engine import TriggerRequest
from decision_workflow.exceptions import ExperimentError, ExperimentNotFoundError
from decision_workflow.experiments.router import (
    ExperimentRouter, MIN_EVALUATION_SAMPLES, select_variant, traffic_bucket
)
from decision_workflow.models.execution import ExecutionStatus
from decision_workflow.models.experiment import ExperimentStatus, Variant, VariantMetrics


@pytest.fixture
def router():
    return ExperimentRouter()


async def running_experiment(router, **options):
    experiment = await router.create_experiment("wf-1", "version-a", "version-b", **options)
    return await router.start(experiment.id)


class TestTrafficSplit:
    """分流测试"""

    def test_bucket_is_deterministic(self):
        assert traffic_bucket("exp-1", "order-42") == traffic_bucket("exp-1", "order-42")
        assert 0 <= traffic_bucket("exp-1", "order-42") < 100

    def test_bucket_salted_by_experiment(self):
        """测试不同实验的分桶相互独立"""
        keys = [f"key-{i}" for i in range(50)]

        first = [traffic_bucket("exp-1", key) for key in keys]
        second = [traffic_bucket("exp-2", key) for key in keys]

        assert first != second

    @pytest.mark.asyncio
    async def test_split_is_approximately_honored(self, router):
        experiment = await router.create_experiment("wf-1", "a", "b", traffic_split_percent=30)

        variants = [select_variant(experiment, f"key-{i}") for i in range(2000)]

        share_b = variants.count(Variant.B) / len(variants)
        assert 0.25 < share_b < 0.35

    @pytest.mark.asyncio
    @pytest.mark.parametrize("split, expected", [(0, Variant.A), (100, Variant.B)])
    async def test_split_edges(self, router, split, expected):
        experiment = await running_experiment(router, traffic_split_percent=split)

        decisions = [await router.route(experiment.id, f"key-{i}") for i in range(30)]

        assert {decision.variant for decision in decisions} == {expected}
        assert {decision.version_id for decision in decisions} == {experiment.version_for(expected)}

    @pytest.mark.asyncio
    async def test_route_is_sticky_per_key(self, router):
        experiment = await running_experiment(router)

        first = await router.route(experiment.id, "customer-7")
        second = await router.route(experiment.id, "customer-7")

        assert first.variant == second.variant
        assert first.bucket == second.bucket
        assert experiment.total_executions == 2
        assert first.to_dict()["versionId"] == first.version_id

    @pytest.mark.asyncio
    async def test_max_executions(self, router):
        experiment = await running_experiment(router, max_executions=2)

        await router.route(experiment.id, "a")
        await router.route(experiment.id, "b")

        with pytest.raises(ExperimentError, match="max executions"):
            await router.route(experiment.id, "c")


class TestExperimentLifecycle:
    """实验生命周期测试"""

    @pytest.mark.asyncio
    async def test_create_validates_options(self, router):
        with pytest.raises(ExperimentError):
            await router.create_experiment("wf-1", "a", "b", traffic_split_percent=120)
        with pytest.raises(ExperimentError):
            await router.create_experiment("wf-1", "a", "b", bad_case_threshold=1.5)
        with pytest.raises(ExperimentError):
            await router.create_experiment("wf-1", "a", "b", max_executions=0)

    @pytest.mark.asyncio
    async def test_lifecycle(self, router):
        """测试 DRAFT -> RUNNING -> PAUSED -> RUNNING -> COMPLETED"""
        experiment = await router.create_experiment("wf-1", "a", "b", experiment_code="SOY-AB")
        assert experiment.status == ExperimentStatus.DRAFT
        assert experiment.experiment_code == "SOY-AB"

        with pytest.raises(ExperimentError, match="not running"):
            await router.route(experiment.id, "key")

        await router.start(experiment.id)
        await router.pause(experiment.id)
        with pytest.raises(ExperimentError):
            await router.route(experiment.id, "key")
        await router.start(experiment.id)
        concluded = await router.conclude(experiment.id, Variant.B, "B is faster")

        assert concluded.status == ExperimentStatus.COMPLETED
        assert concluded.winner_variant == Variant.B
        assert concluded.ended_at is not None
        assert concluded.to_dict()["winnerVariant"] == "B"
        with pytest.raises(ExperimentError):
            await router.abort(experiment.id)
        with pytest.raises(ExperimentError):
            await router.start(experiment.id)

    @pytest.mark.asyncio
    async def test_abort(self, router):
        experiment = await running_experiment(router)

        aborted = await router.abort(experiment.id, "bad data feed")

        assert aborted.status == ExperimentStatus.ABORTED
        assert aborted.conclusion_summary == "bad data feed"
        with pytest.raises(ExperimentError):
            await router.pause(experiment.id)

    @pytest.mark.asyncio
    async def test_unknown_experiment(self, router):
        with pytest.raises(ExperimentNotFoundError):
            await router.get("missing")


class TestMetricsAndReview:
    """指标与自动止损测试"""

    def test_variant_metrics(self):
        metrics = VariantMetrics(window_size=5)
        for duration, success in [(100, True), (200, False), (300, True), (400, True), (500, False), (600, True)]:
            metrics.record(success, duration, bad_case=not success)

        assert metrics.total_executions == 6
        assert metrics.success_rate == pytest.approx(4 / 6)
        assert metrics.rolling_sample_size == 5
        assert metrics.rolling_bad_case_rate == pytest.approx(0.4)
        assert metrics.avg_duration_ms == pytest.approx(350)
        assert metrics.p95_duration_ms == 600

    def test_p95_nearest_rank(self):
        metrics = VariantMetrics()
        for duration in range(1, 21):
            metrics.record(True, duration * 10, bad_case=False)

        assert metrics.p95_duration_ms == 190
        assert VariantMetrics().p95_duration_ms == 0

    @pytest.mark.asyncio
    async def test_auto_stop_flags_review(self, router):
        """测试坏例率超过阈值时标记待复核，路由不受影响"""
        experiment = await running_experiment(router, min_sample_size=4, bad_case_threshold=0.25)

        flags = []
        for success in [True, False, True, False]:
            flags.append(await router.record_outcome(experiment.id, Variant.B, success, 100))
        flags.append(await router.record_outcome(experiment.id, Variant.B, False, 100))

        assert flags == [False, False, False, True, False]
        assert experiment.review_required is True
        assert "Variant B" in experiment.review_reason
        assert experiment.status == ExperimentStatus.RUNNING
        await router.route(experiment.id, "still-routing")

    @pytest.mark.asyncio
    async def test_auto_stop_disabled(self, router):
        experiment = await running_experiment(router, min_sample_size=1, auto_stop_enabled=False)

        flagged = await router.record_outcome(experiment.id, Variant.A, False, 100)

        assert flagged is False
        assert experiment.review_required is False

    @pytest.mark.asyncio
    async def test_explicit_bad_case(self, router):
        experiment = await running_experiment(router, min_sample_size=1)

        flagged = await router.record_outcome(experiment.id, Variant.A, True, 100, bad_case=True)

        assert flagged is True
        assert experiment.metrics_a.bad_case_count == 1
        assert experiment.metrics_a.success_count == 1

    @pytest.mark.asyncio
    async def test_evaluate_needs_samples(self, router):
        experiment = await running_experiment(router)

        report = await router.evaluate(experiment.id)

        assert report["recommendation"] == "CONTINUE"
        assert report["metrics"]["variantA"]["totalExecutions"] == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("b_success, b_duration, recommendation", [
        (True, 500, "PROMOTE_B"),
        (False, 500, "KEEP_A"),
    ])
    async def test_evaluate_success_rate(self, router, b_success, b_duration, recommendation):
        experiment = await running_experiment(router, auto_stop_enabled=False)
        for i in range(MIN_EVALUATION_SAMPLES // 2):
            await router.record_outcome(experiment.id, Variant.A, i % 2 == 0, 500)
            await router.record_outcome(experiment.id, Variant.B, b_success, b_duration)

        report = await router.evaluate(experiment.id)

        assert report["recommendation"] == recommendation

    @pytest.mark.asyncio
    async def test_evaluate_duration(self, router):
        experiment = await running_experiment(router, auto_stop_enabled=False)
        for _ in range(MIN_EVALUATION_SAMPLES // 2):
            await router.record_outcome(experiment.id, Variant.A, True, 3000)
            await router.record_outcome(experiment.id, Variant.B, True, 1500)

        report = await router.evaluate(experiment.id)

        assert report["recommendation"] == "PROMOTE_B"
        assert "duration" in report["reason"]

    @pytest.mark.asyncio
    async def test_evaluate_within_tolerance(self, router):
        experiment = await running_experiment(router, auto_stop_enabled=False)
        for _ in range(MIN_EVALUATION_SAMPLES // 2):
            await router.record_outcome(experiment.id, Variant.A, True, 1000)
            await router.record_outcome(experiment.id, Variant.B, True, 1200)

        report = await router.evaluate(experiment.id)

        assert report["recommendation"] == "NO_SIGNIFICANT_DIFFERENCE"


class TestEngineExperiments:
    """引擎实验路由测试"""

    @pytest.fixture
    def two_versions(self, engine, linear_dsl):
        async def _create():
            definition = await engine.create_definition("ab-workflow")
            first = await engine.publish((await engine.save_draft(definition.id, linear_dsl)).id)
            changed = dict(linear_dsl, name="linear-v2")
            second = await engine.publish((await engine.save_draft(definition.id, changed)).id)
            return definition, first, second

        return _create

    @pytest.mark.asyncio
    @pytest.mark.parametrize("split, variant", [(100, "B"), (0, "A")])
    async def test_trigger_routes_to_variant(self, engine, two_versions, split, variant):
        definition, first, second = await two_versions()
        experiment = await engine.create_experiment(definition.id, first.id, second.id,
                                                    traffic_split_percent=split)
        await engine.experiments.start(experiment.id)

        execution = await engine.run(TriggerRequest(definition.id, experiment_id=experiment.id), timeout=5)

        assert execution.status == ExecutionStatus.SUCCESS
        assert execution.variant == variant
        assert execution.version_id == (second.id if variant == "B" else first.id)
        metrics = experiment.metrics_for(Variant(variant))
        assert metrics.total_executions == 1
        assert metrics.success_count == 1

    @pytest.mark.asyncio
    async def test_experiment_requires_published_versions(self, engine, two_versions, linear_dsl):
        definition, first, _ = await two_versions()
        draft = await engine.save_draft(definition.id, linear_dsl)

        with pytest.raises(ExperimentError, match="not published"):
            await engine.create_experiment(definition.id, first.id, draft.id)

    @pytest.mark.asyncio
    async def test_trigger_rejects_stopped_experiment(self, engine, two_versions):
        definition, first, second = await two_versions()
        experiment = await engine.create_experiment(definition.id, first.id, second.id)

        with pytest.raises(ExperimentError):
            await engine.trigger(TriggerRequest(definition.id, experiment_id=experiment.id))
        assert engine.resource_manager.active_count(definition.id) == 0
