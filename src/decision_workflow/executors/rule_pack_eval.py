"""
规则包评估执行器
"""
import logging
from typing import Any, Dict, List, Mapping

from ..core.expressions import read_number, read_value_by_path
from ..models.execution import FailureCategory
from ..models.frozen import thaw
from ..models.workflow import NodeType, WorkflowNode
from ..rules.engine import RuleEvaluationEngine
from .base import NodeExecutionContext, NodeExecutor, NodeResult


logger = logging.getLogger(__name__)


DEFAULT_MIN_HIT_SCORE = 60

# 拦截处理方式：FAIL 直接硬失败；DEFER 交由下游风控节点处理
BLOCK_MODE_FAIL = "FAIL"
BLOCK_MODE_DEFER = "DEFER"


def rule_pack_codes(node: WorkflowNode) -> List[str]:
    """节点引用的规则包编码"""
    codes = list(node.config.get("rulePackCodes", []))
    single = node.config.get("rulePackCode")
    if single and single not in codes:
        codes.insert(0, single)
    return codes


def clamp_score(value: Any, fallback: int) -> int:
    number = read_number(value)
    source = fallback if number is None else number
    return max(0, min(100, int(round(source))))


class RulePackEvalNodeExecutor(NodeExecutor):
    """规则包评估执行器"""

    node_types = (NodeType.RULE_PACK_EVAL,)
    output_fields = frozenset({
        "hitScore", "minHitScore", "passed", "blocked", "blockRuleCodes",
        "matchedRuleCount", "totalRuleCount", "failedRuleCodes", "packs",
        "rulePackCodes", "_meta",
    })

    def __init__(self, rule_engine: RuleEvaluationEngine = None):
        self.rule_engine = rule_engine or RuleEvaluationEngine()

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        config = context.config
        codes = rule_pack_codes(context.node)
        if not codes:
            return NodeResult.failed("rule-pack-eval node requires rulePackCode or rulePackCodes")

        packs = [pack for pack in context.rule_packs if pack.rule_pack_code in codes]
        missing = sorted(set(codes) - {pack.rule_pack_code for pack in packs})
        if missing:
            return NodeResult.failed(f"Rule packs not available in snapshot: {', '.join(missing)}")

        record = thaw(context.input) if context.input is not None else {}
        scope = config.get("scope")
        if scope is None and config.get("scopeField"):
            scope = read_value_by_path(record, config["scopeField"])

        result = self.rule_engine.evaluate(record, packs, scope=scope)
        if result.total_rule_count == 0:
            return NodeResult.failed(f"No active rules in rule packs: {', '.join(codes)}")

        min_hit_score = clamp_score(config.get("minHitScore"), DEFAULT_MIN_HIT_SCORE)
        output: Dict[str, Any] = dict(record) if isinstance(record, Mapping) else {"input": record}
        output.update(result.to_dict())
        output.update({
            "rulePackCodes": codes,
            "minHitScore": min_hit_score,
            "passed": result.hit_score >= min_hit_score and not result.blocked,
            "_meta": {"executor": self.name},
        })

        logger.info(
            f"Node {context.node.id} rule evaluation: hitScore={result.hit_score}, "
            f"minHitScore={min_hit_score}, blocked={result.blocked}"
        )

        block_mode = str(config.get("blockMode", BLOCK_MODE_FAIL)).upper()
        if result.blocked and block_mode != BLOCK_MODE_DEFER:
            return NodeResult.failed(
                f"Runtime override rules failed: {', '.join(result.block_rule_codes)}",
                category=FailureCategory.RISK_BLOCKED,
                output=output
            )
        if not output["passed"] and config.get("failOnMiss", False):
            return NodeResult.failed(
                f"Hit score {result.hit_score} below minimum {min_hit_score}",
                output=output
            )
        return NodeResult.success(output)
