"""
分层决策规则评估引擎

按固定层级顺序（DEFAULT → INDUSTRY → EXPERIENCE → RUNTIME_OVERRIDE）评估规则包，
每个规则包的命中分 = 命中规则权重之和 / 全部规则权重之和 × 100，取整。
RUNTIME_OVERRIDE 层任一规则未命中即判定为硬拦截，与其它层得分无关。

评估是纯函数：相同输入与相同规则集总是得到相同结果。
"""
import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..core.expressions import read_number, read_value_by_path
from ..models.frozen import thaw
from ..models.rules import DecisionRule, DecisionRulePack, RuleLayer, RuleOperator


logger = logging.getLogger(__name__)


# 层级顺序（固定且全序），同时作为跨层平局裁决轴
LAYER_ORDER: Tuple[RuleLayer, ...] = (
    RuleLayer.DEFAULT,
    RuleLayer.INDUSTRY,
    RuleLayer.EXPERIENCE,
    RuleLayer.RUNTIME_OVERRIDE,
)

# 命中分取整方式
HIT_SCORE_ROUNDING = ROUND_HALF_UP

# 层内按 priority 降序排列
PRIORITY_DESCENDING = True


@dataclass(frozen=True)
class RuleHit:
    """单条规则评估结果"""
    rule_code: str
    field_path: str
    operator: RuleOperator
    expected_value: Any
    actual_value: Any
    matched: bool
    weight: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ruleCode": self.rule_code,
            "fieldPath": self.field_path,
            "operator": self.operator.value,
            "expectedValue": thaw(self.expected_value),
            "actualValue": thaw(self.actual_value),
            "matched": self.matched,
            "weight": self.weight,
        }


@dataclass(frozen=True)
class PackEvaluation:
    """规则包评估结果"""
    rule_pack_code: str
    rule_layer: RuleLayer
    hit_score: int
    matched_weight: int
    total_weight: int
    rule_hits: Tuple[RuleHit, ...] = ()

    @property
    def failed_rule_codes(self) -> Tuple[str, ...]:
        return tuple(hit.rule_code for hit in self.rule_hits if not hit.matched)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rulePackCode": self.rule_pack_code,
            "ruleLayer": self.rule_layer.value,
            "hitScore": self.hit_score,
            "matchedWeight": self.matched_weight,
            "totalWeight": self.total_weight,
            "failedRuleCodes": list(self.failed_rule_codes),
            "ruleHits": [hit.to_dict() for hit in self.rule_hits],
        }


@dataclass(frozen=True)
class RuleEvaluationResult:
    """整体评估结果"""
    packs: Tuple[PackEvaluation, ...] = ()
    blocked: bool = False
    block_rule_codes: Tuple[str, ...] = ()
    hit_score: int = 0
    matched_rule_count: int = 0
    total_rule_count: int = 0

    @property
    def failed_rule_codes(self) -> Tuple[str, ...]:
        codes: List[str] = []
        for pack in self.packs:
            codes.extend(pack.failed_rule_codes)
        return tuple(codes)

    def pack(self, rule_pack_code: str) -> Optional[PackEvaluation]:
        for pack in self.packs:
            if pack.rule_pack_code == rule_pack_code:
                return pack
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hitScore": self.hit_score,
            "blocked": self.blocked,
            "blockRuleCodes": list(self.block_rule_codes),
            "matchedRuleCount": self.matched_rule_count,
            "totalRuleCount": self.total_rule_count,
            "failedRuleCodes": list(self.failed_rule_codes),
            "packs": [pack.to_dict() for pack in self.packs],
        }


def compute_hit_score(matched_weight: int, total_weight: int) -> int:
    """命中分，无规则时为 0"""
    if total_weight <= 0:
        return 0
    ratio = Decimal(matched_weight) * 100 / Decimal(total_weight)
    score = int(ratio.quantize(Decimal(1), rounding=HIT_SCORE_ROUNDING))
    return max(0, min(100, score))


def normalize_weight(weight: Any) -> int:
    """权重取整且不小于 1"""
    number = read_number(weight)
    if number is None:
        return 1
    return max(1, int(number))


def order_packs(packs: Iterable[DecisionRulePack]) -> List[DecisionRulePack]:
    """按层级、层内优先级、编码排序"""
    sign = -1 if PRIORITY_DESCENDING else 1
    return sorted(
        packs,
        key=lambda pack: (LAYER_ORDER.index(pack.rule_layer), sign * pack.priority, pack.rule_pack_code)
    )


def _order_rules(rules: Iterable[DecisionRule]) -> List[DecisionRule]:
    sign = -1 if PRIORITY_DESCENDING else 1
    return sorted(rules, key=lambda rule: (sign * rule.priority, rule.rule_code))


def _as_members(expected: Any) -> Tuple[Any, ...]:
    if isinstance(expected, (list, tuple, set, frozenset)):
        return tuple(expected)
    if isinstance(expected, str) and "," in expected:
        return tuple(item.strip() for item in expected.split(","))
    return (expected,)


def match_rule(actual: Any, operator: RuleOperator, expected: Any) -> bool:
    """单条规则匹配，非数值参与数值比较视为未命中"""
    # 规则期望值与快照输入均为冻结结构，比较前统一还原
    actual, expected = thaw(actual), thaw(expected)
    if operator == RuleOperator.EXISTS:
        return actual is not None
    if operator == RuleOperator.NOT_EXISTS:
        return actual is None
    if operator == RuleOperator.EQ:
        return actual == expected
    if operator == RuleOperator.NEQ:
        return actual != expected
    if operator == RuleOperator.IN:
        return actual in _as_members(expected)
    if operator == RuleOperator.NOT_IN:
        return actual is not None and actual not in _as_members(expected)
    if operator in (RuleOperator.CONTAINS, RuleOperator.NOT_CONTAINS):
        if isinstance(actual, str):
            contained = isinstance(expected, str) and expected in actual
        elif isinstance(actual, (list, tuple)):
            contained = expected in actual
        else:
            return False
        return contained if operator == RuleOperator.CONTAINS else not contained

    left = read_number(actual)
    if left is None:
        return False
    if operator == RuleOperator.BETWEEN:
        bounds = _as_members(expected)
        if len(bounds) != 2:
            return False
        low, high = read_number(bounds[0]), read_number(bounds[1])
        if low is None or high is None:
            return False
        return low <= left <= high

    right = read_number(expected)
    if right is None:
        return False
    if operator == RuleOperator.GT:
        return left > right
    if operator == RuleOperator.GTE:
        return left >= right
    if operator == RuleOperator.LT:
        return left < right
    if operator == RuleOperator.LTE:
        return left <= right
    return False


class RuleEvaluationEngine:
    """决策规则评估引擎"""

    def evaluate_pack(self, record: Any, pack: DecisionRulePack) -> PackEvaluation:
        """评估单个规则包"""
        hits = []
        for rule in _order_rules(rule for rule in pack.rules if rule.active):
            actual = read_value_by_path(record, rule.field_path)
            hits.append(RuleHit(
                rule_code=rule.rule_code,
                field_path=rule.field_path,
                operator=rule.operator,
                expected_value=rule.expected_value,
                actual_value=actual,
                matched=match_rule(actual, rule.operator, rule.expected_value),
                weight=normalize_weight(rule.weight),
            ))

        total_weight = sum(hit.weight for hit in hits)
        matched_weight = sum(hit.weight for hit in hits if hit.matched)
        return PackEvaluation(
            rule_pack_code=pack.rule_pack_code,
            rule_layer=pack.rule_layer,
            hit_score=compute_hit_score(matched_weight, total_weight),
            matched_weight=matched_weight,
            total_weight=total_weight,
            rule_hits=tuple(hits),
        )

    def evaluate(
        self,
        record: Any,
        packs: Iterable[DecisionRulePack],
        scope: Optional[str] = None
    ) -> RuleEvaluationResult:
        """
        评估全部适用的规则包

        Args:
            record: 输入记录
            packs: 候选规则包（不可变快照）
            scope: 适用范围过滤，None 表示不过滤

        Returns:
            RuleEvaluationResult: 各规则包命中分与拦截结论
        """
        applicable = [pack for pack in packs if pack.active and pack.applies_to(scope)]
        evaluations = tuple(self.evaluate_pack(record, pack) for pack in order_packs(applicable))

        block_codes: List[str] = []
        for evaluation in evaluations:
            if evaluation.rule_layer == RuleLayer.RUNTIME_OVERRIDE:
                block_codes.extend(evaluation.failed_rule_codes)

        total_weight = sum(evaluation.total_weight for evaluation in evaluations)
        matched_weight = sum(evaluation.matched_weight for evaluation in evaluations)
        result = RuleEvaluationResult(
            packs=evaluations,
            blocked=bool(block_codes),
            block_rule_codes=tuple(block_codes),
            hit_score=compute_hit_score(matched_weight, total_weight),
            matched_rule_count=sum(
                1 for evaluation in evaluations for hit in evaluation.rule_hits if hit.matched
            ),
            total_rule_count=sum(len(evaluation.rule_hits) for evaluation in evaluations),
        )

        if result.blocked:
            logger.info(f"Runtime override rules failed: {', '.join(block_codes)}")
        return result
