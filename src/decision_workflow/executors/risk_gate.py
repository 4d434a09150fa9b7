"""
风控闸门执行器

观测风险（风险等级或风险分）达到配置阈值时执行动作：
- BLOCK：硬失败，失败分类 RISK_BLOCKED
- ALERT：继续执行，输出带告警标记
- APPROVAL：节点进入 WAITING，等待人工审批（不计超时）
- DEGRADE：输出降级结果后继续

上游规则评估的 RUNTIME_OVERRIDE 拦截总是视为达到阈值。
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ..core.expressions import read_number, read_value_by_path
from ..integrations.approval import ApprovalGateway
from ..models.execution import FailureCategory
from ..models.frozen import thaw
from ..models.workflow import NodeType
from .base import NodeExecutionContext, NodeExecutor, NodeResult


logger = logging.getLogger(__name__)


class RiskLevel(Enum):
    """风险等级"""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    EXTREME = 4

    @classmethod
    def parse(cls, value: Any) -> Optional['RiskLevel']:
        if isinstance(value, RiskLevel):
            return value
        if isinstance(value, str):
            return cls.__members__.get(value.strip().upper())
        return None


class GateAction(Enum):
    """闸门动作"""
    BLOCK = "BLOCK"
    ALERT = "ALERT"
    APPROVAL = "APPROVAL"
    DEGRADE = "DEGRADE"


class DegradeAction(Enum):
    """降级后的行动建议"""
    HOLD = "HOLD"
    REDUCE = "REDUCE"
    REVIEW_ONLY = "REVIEW_ONLY"


DEFAULT_RISK_GRADE = RiskLevel.HIGH
DEFAULT_SCORE_FIELD = "riskScore"

# 降级后的仓位比例
DEGRADE_POSITION_SCALE = {
    DegradeAction.HOLD: 0.0,
    DegradeAction.REDUCE: 0.5,
    DegradeAction.REVIEW_ONLY: 0.0,
}


def derive_level_from_quality(score: float) -> RiskLevel:
    """由质量分（命中分/置信度，越高越安全）推导风险等级"""
    if score >= 80:
        return RiskLevel.LOW
    if score >= 60:
        return RiskLevel.MEDIUM
    if score >= 40:
        return RiskLevel.HIGH
    return RiskLevel.EXTREME


def _first(data: Any, paths: List[str]) -> Any:
    for path in paths:
        value = read_value_by_path(data, path)
        if value is not None:
            return value
    return None


class RiskGateNodeExecutor(NodeExecutor):
    """风控闸门执行器"""

    node_types = (NodeType.RISK_GATE,)
    output_fields = frozenset({
        "riskLevel", "riskScore", "triggered", "gateAction", "action", "flagged",
        "degraded", "degradeAction", "positionScale", "reasons", "approvalRequestId",
        "approved", "source", "_meta",
    })

    def __init__(self, approval_gateway: Optional[ApprovalGateway] = None):
        self.approval_gateway = approval_gateway

    def observe(self, data: Any, config: Mapping[str, Any]) -> Dict[str, Any]:
        """读取观测风险"""
        score_field = config.get("scoreField", DEFAULT_SCORE_FIELD)
        risk_score = read_number(_first(data, [score_field, "risk.score"]))
        level = RiskLevel.parse(_first(data, ["riskLevel", "riskGrade", "risk.level"]))

        derived = False
        if level is None and risk_score is None:
            quality = read_number(_first(data, ["hitScore", "confidence", "score"]))
            if quality is not None:
                level = derive_level_from_quality(quality)
                derived = True

        return {"riskScore": risk_score, "riskLevel": level, "derived": derived}

    def score_threshold(self, context: NodeExecutionContext) -> Optional[float]:
        config = context.config
        param_key = config.get("thresholdParam")
        if param_key and param_key in context.params:
            return read_number(context.params[param_key])
        return read_number(config.get("scoreThreshold"))

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        config = context.config
        data = thaw(context.input) if context.input is not None else {}

        try:
            action = GateAction(str(config.get("action", GateAction.BLOCK.value)).upper())
        except ValueError:
            return NodeResult.failed(f"Unknown risk gate action: {config.get('action')}")
        threshold_grade = RiskLevel.parse(config.get("riskGrade")) or DEFAULT_RISK_GRADE
        score_threshold = self.score_threshold(context)

        observed = self.observe(data, config)
        reasons: List[str] = []
        level = observed["riskLevel"]
        if level is not None and level.value >= threshold_grade.value:
            reasons.append(f"risk level {level.name} >= {threshold_grade.name}")
        if observed["riskScore"] is not None and score_threshold is not None \
                and observed["riskScore"] >= score_threshold:
            reasons.append(f"risk score {observed['riskScore']:g} >= {score_threshold:g}")
        if isinstance(data, dict) and data.get("blocked"):
            codes = ", ".join(data.get("blockRuleCodes", [])) or "override"
            reasons.append(f"runtime override block ({codes})")
        for path in config.get("blockerRules", []):
            if read_value_by_path(data, path):
                reasons.append(f"blocker field {path} is set")

        output: Dict[str, Any] = {
            "riskLevel": level.name if level else None,
            "riskScore": observed["riskScore"],
            "triggered": bool(reasons),
            "gateAction": action.value,
            "reasons": reasons,
            "source": data,
            "_meta": {"executor": self.name, "derivedLevel": observed["derived"]},
        }

        if not reasons:
            return NodeResult.success(output, "risk below threshold")

        logger.info(f"Node {context.node.id} risk gate triggered ({action.value}): {'; '.join(reasons)}")

        if action == GateAction.BLOCK:
            return NodeResult.failed(
                f"Risk gate blocked: {'; '.join(reasons)}",
                category=FailureCategory.RISK_BLOCKED,
                output=output
            )

        if action == GateAction.ALERT:
            output["flagged"] = True
            return NodeResult.success(output, "risk alert raised")

        if action == GateAction.DEGRADE:
            try:
                degrade = DegradeAction(str(config.get("degradeAction", DegradeAction.REDUCE.value)).upper())
            except ValueError:
                return NodeResult.failed(f"Unknown degrade action: {config.get('degradeAction')}")
            scale = read_number(config.get("positionScale"))
            output.update({
                "degraded": True,
                "degradeAction": degrade.value,
                "action": degrade.value,
                "positionScale": DEGRADE_POSITION_SCALE[degrade] if scale is None else scale,
            })
            return NodeResult.success(output, f"degraded to {degrade.value}")

        # APPROVAL
        if self.approval_gateway is None:
            return NodeResult.failed("Risk gate requires approval but no approval gateway is configured")
        approval = await self.approval_gateway.request(
            context.execution_id,
            context.node.id,
            {"reasons": reasons, "riskLevel": output["riskLevel"], "riskScore": output["riskScore"]}
        )
        output["approvalRequestId"] = approval.id
        return NodeResult.waiting(output, "awaiting approval")
