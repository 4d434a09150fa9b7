"""
智能体类执行器：单智能体、辩论轮次、裁判
"""
import asyncio
import logging
from collections import Counter
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..core.expressions import read_number
from ..exceptions import AgentInvocationError
from ..integrations.agent import AgentInvoker
from ..integrations.references import ReferenceRegistry
from ..integrations.validators import SchemaValidator
from ..models.frozen import thaw
from ..models.workflow import NodeType
from .base import NodeExecutionContext, NodeExecutor, NodeResult


logger = logging.getLogger(__name__)


class JudgePolicy(Enum):
    """裁判策略"""
    WEIGHTED = "WEIGHTED"
    UNANIMOUS = "UNANIMOUS"
    MAJORITY = "MAJORITY"
    VETO = "VETO"


DEFAULT_MAX_ROUNDS = 3
DEFAULT_CONSENSUS_THRESHOLD = 0.8
DEFAULT_MIN_CONFIDENCE_FOR_ACTION = 60
DEFAULT_VETO_STANCE = "REJECT"
NEUTRAL_STANCE = "NEUTRAL"

# 立场到行动建议的默认映射
DEFAULT_ACTION_MAP = {
    "BULLISH": "BUY",
    "BEARISH": "SELL",
    "NEUTRAL": "HOLD",
    "REJECT": "HOLD",
}
REVIEW_ONLY_ACTION = "REVIEW_ONLY"


class AgentOutputError(Exception):
    """智能体输出不符合 schema"""
    pass


class AgentNodeExecutor(NodeExecutor):
    """智能体执行器基类"""

    def __init__(
        self,
        invoker: AgentInvoker,
        references: Optional[ReferenceRegistry] = None,
        schema_validator: Optional[SchemaValidator] = None
    ):
        self.invoker = invoker
        self.references = references
        self.schema_validator = schema_validator or SchemaValidator()

    async def invoke_agent(
        self,
        context: NodeExecutionContext,
        agent_code: str,
        payload: Dict[str, Any]
    ) -> Dict[str, Any]:
        """调用智能体并按 profile 中的 schema 校验输出"""
        profile = self.references.get_agent_profile(agent_code) if self.references else None
        request = dict(payload)
        request.setdefault("executionId", context.execution_id)
        request.setdefault("nodeId", context.node.id)
        if profile is not None:
            request.setdefault("roleType", profile.role_type)
            request.setdefault("promptTemplateCode", profile.prompt_template_code)
            request.setdefault("modelConfigKey", profile.model_config_key)

        response = await self.invoker.invoke(agent_code, request)

        if profile is not None and profile.output_schema:
            errors = self.schema_validator.validate(response, thaw(profile.output_schema))
            if errors:
                raise AgentOutputError(f"Agent '{agent_code}' output violates schema: {'; '.join(errors)}")
        return response

    def agent_weight(self, agent_code: str) -> float:
        profile = self.references.get_agent_profile(agent_code) if self.references else None
        return profile.weight if profile is not None else 1.0


class SingleAgentNodeExecutor(AgentNodeExecutor):
    """单智能体执行器"""

    node_types = (NodeType.SINGLE_AGENT,)

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        agent_code = context.config.get("agentCode") or context.config.get("agentProfileCode")
        if not agent_code:
            return NodeResult.failed("single-agent node requires agentCode")

        payload = {
            "input": thaw(context.input),
            "params": thaw(context.params),
            "instruction": context.config.get("instruction"),
        }
        try:
            response = await self.invoke_agent(context, agent_code, payload)
        except (AgentInvocationError, AgentOutputError) as e:
            return NodeResult.failed(str(e))

        output = dict(response)
        output["agentCode"] = agent_code
        output["_meta"] = {"executor": self.name, "attempt": context.attempt}
        return NodeResult.success(output)


def _participants(config: Mapping[str, Any]) -> List[Dict[str, Any]]:
    participants = []
    for item in config.get("participants", []):
        if isinstance(item, str):
            participants.append({"agentCode": item})
        elif isinstance(item, Mapping) and item.get("agentCode"):
            participants.append(thaw(item))
    return participants


def consensus_score(arguments: List[Dict[str, Any]]) -> float:
    """共识度：众数立场占有效论点的比例"""
    stances = [arg["stance"] for arg in arguments if arg.get("stance") and not arg.get("error")]
    if not stances:
        return 0.0
    _, count = Counter(stances).most_common(1)[0]
    return round(count / len(stances), 4)


class DebateRoundNodeExecutor(AgentNodeExecutor):
    """辩论轮次执行器：收集多位参与者的原始论点，不做裁决"""

    node_types = (NodeType.DEBATE_ROUND,)
    output_fields = frozenset({
        "debate", "topic", "rounds", "roundCount", "participantCount",
        "converged", "finalConsensusScore", "_meta",
    })

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        config = context.config
        participants = _participants(config)
        if len(participants) < 2:
            return NodeResult.failed("debate-round node requires at least 2 participants")

        input_data = thaw(context.input)
        topic = config.get("topic") or (input_data.get("topic") if isinstance(input_data, dict) else None) or ""
        max_rounds = max(1, min(10, int(config.get("maxRounds", DEFAULT_MAX_ROUNDS))))
        threshold = float(config.get("consensusThreshold", DEFAULT_CONSENSUS_THRESHOLD))

        rounds: List[Dict[str, Any]] = []
        converged = False
        for round_number in range(1, max_rounds + 1):
            arguments = await asyncio.gather(*[
                self._argue(context, participant, topic, round_number, input_data, rounds)
                for participant in participants
            ])
            valid = [arg for arg in arguments if not arg.get("error")]
            if not valid:
                return NodeResult.failed(f"All debate participants failed in round {round_number}")

            score = consensus_score(list(arguments))
            rounds.append({
                "round": round_number,
                "arguments": list(arguments),
                "consensusScore": score,
            })
            logger.info(f"Node {context.node.id} debate round {round_number}: consensus={score}")
            if score >= threshold:
                converged = True
                break

        return NodeResult.success({
            "debate": True,
            "topic": topic,
            "rounds": rounds,
            "roundCount": len(rounds),
            "participantCount": len(participants),
            "converged": converged,
            "finalConsensusScore": rounds[-1]["consensusScore"],
            "_meta": {"executor": self.name},
        })

    async def _argue(
        self,
        context: NodeExecutionContext,
        participant: Dict[str, Any],
        topic: str,
        round_number: int,
        input_data: Any,
        previous_rounds: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        agent_code = participant["agentCode"]
        payload = {
            "topic": topic,
            "round": round_number,
            "role": participant.get("role"),
            "input": input_data,
            "previousRounds": list(previous_rounds),
        }
        try:
            response = await self.invoke_agent(context, agent_code, payload)
        except (AgentInvocationError, AgentOutputError) as e:
            logger.warning(f"Debate participant {agent_code} failed: {e}")
            return {"agentCode": agent_code, "error": str(e)}

        stance = response.get("stance")
        return {
            "agentCode": agent_code,
            "role": participant.get("role"),
            "stance": str(stance).upper() if stance else None,
            "confidence": read_number(response.get("confidence")),
            "weight": participant.get("weight", self.agent_weight(agent_code)),
            "keyPoints": list(response.get("keyPoints", [])),
            "raw": response,
        }


def extract_debate(input_data: Any) -> Optional[Dict[str, Any]]:
    """从输入中提取辩论数据（直接上游或多分支输入）"""
    if not isinstance(input_data, dict):
        return None
    if input_data.get("debate") and input_data.get("rounds"):
        return input_data
    branches = input_data.get("branches")
    if isinstance(branches, dict):
        for output in branches.values():
            if isinstance(output, dict) and output.get("debate") and output.get("rounds"):
                return output
    if isinstance(input_data.get("arguments"), list):
        return {"topic": input_data.get("topic", ""), "rounds": [{"arguments": input_data["arguments"]}]}
    return None


def _votes(debate: Dict[str, Any]) -> List[Dict[str, Any]]:
    last_round = debate["rounds"][-1]
    votes = []
    for arg in last_round.get("arguments", []):
        if arg.get("error") or not arg.get("stance"):
            continue
        confidence = read_number(arg.get("confidence"))
        weight = read_number(arg.get("weight"))
        votes.append({
            "agentCode": arg.get("agentCode"),
            "stance": str(arg["stance"]).upper(),
            "confidence": 50.0 if confidence is None else confidence,
            "weight": 1.0 if weight is None or weight <= 0 else weight,
        })
    return votes


def _ranked(tally: Dict[str, float]) -> List[Tuple[str, float]]:
    # 得分降序，同分按立场名排序保证确定性
    return sorted(tally.items(), key=lambda item: (-item[1], item[0]))


def apply_policy(policy: JudgePolicy, votes: List[Dict[str, Any]], config: Mapping[str, Any]) -> Dict[str, Any]:
    """按裁判策略汇总投票为单一裁决"""
    if not votes:
        return {"stance": NEUTRAL_STANCE, "confidence": 0, "decided": False, "tally": {}}

    counts = Counter(vote["stance"] for vote in votes)

    if policy == JudgePolicy.VETO:
        veto_stance = str(config.get("vetoStance", DEFAULT_VETO_STANCE)).upper()
        veto_participants = set(config.get("vetoParticipants", []))
        vetoes = [
            vote for vote in votes
            if vote["stance"] == veto_stance
            and (not veto_participants or vote["agentCode"] in veto_participants)
        ]
        if vetoes:
            return {
                "stance": veto_stance,
                "confidence": round(max(vote["confidence"] for vote in vetoes)),
                "decided": True,
                "vetoed": True,
                "vetoedBy": [vote["agentCode"] for vote in vetoes],
                "tally": dict(counts),
            }
        verdict = apply_policy(JudgePolicy.WEIGHTED, votes, config)
        verdict["vetoed"] = False
        return verdict

    if policy in (JudgePolicy.MAJORITY, JudgePolicy.UNANIMOUS):
        stance, count = _ranked(dict(counts))[0]
        required = len(votes) if policy == JudgePolicy.UNANIMOUS else len(votes) // 2 + 1
        if count < required:
            return {
                "stance": NEUTRAL_STANCE,
                "confidence": 0,
                "decided": False,
                "tally": dict(counts),
            }
        supporters = [vote["confidence"] for vote in votes if vote["stance"] == stance]
        return {
            "stance": stance,
            "confidence": round(sum(supporters) / len(supporters)),
            "decided": True,
            "tally": dict(counts),
        }

    # WEIGHTED：权重 × 置信度累加
    tally: Dict[str, float] = {}
    for vote in votes:
        tally[vote["stance"]] = tally.get(vote["stance"], 0.0) + vote["weight"] * vote["confidence"]
    stance, score = _ranked(tally)[0]
    total_weight = sum(vote["weight"] for vote in votes)
    return {
        "stance": stance,
        "confidence": round(score / total_weight),
        "decided": True,
        "tally": {key: round(value, 4) for key, value in tally.items()},
    }


class JudgeAgentNodeExecutor(AgentNodeExecutor):
    """裁判执行器：按声明的策略产出单一裁决"""

    node_types = (NodeType.JUDGE_AGENT,)
    output_fields = frozenset({
        "verdict", "stance", "confidence", "action", "decided", "policy",
        "debateSummary", "_meta",
    })

    async def execute(self, context: NodeExecutionContext) -> NodeResult:
        config = context.config
        try:
            policy = JudgePolicy(str(config.get("policy", JudgePolicy.WEIGHTED.value)).upper())
        except ValueError:
            return NodeResult.failed(f"Unknown judge policy: {config.get('policy')}")

        debate = extract_debate(thaw(context.input))
        if debate is None:
            return NodeResult.failed(f"judge-agent node {context.node.id} received no debate data")

        votes = _votes(debate)
        verdict = apply_policy(policy, votes, config)
        verdict["policy"] = policy.value
        verdict["method"] = "RULE_BASED"

        fallback = False
        judge_code = config.get("judgeAgentCode")
        if judge_code:
            try:
                opinion = await self.invoke_agent(context, judge_code, {
                    "policy": policy.value,
                    "topic": debate.get("topic", ""),
                    "votes": votes,
                    "tally": verdict["tally"],
                    "rounds": debate["rounds"],
                })
            except (AgentInvocationError, AgentOutputError) as e:
                logger.warning(f"Judge agent {judge_code} failed, using rule-based verdict: {e}")
                fallback = True
            else:
                verdict["judgeOpinion"] = opinion
                verdict["method"] = "AGENT"
                # 仅加权策略允许裁判智能体改写立场
                if policy == JudgePolicy.WEIGHTED and opinion.get("stance"):
                    verdict["stance"] = str(opinion["stance"]).upper()
                    confidence = read_number(opinion.get("confidence"))
                    if confidence is not None:
                        verdict["confidence"] = round(confidence)

        self._apply_action(verdict, config)

        rounds = debate.get("rounds", [])
        return NodeResult.success({
            "verdict": verdict,
            "stance": verdict["stance"],
            "confidence": verdict["confidence"],
            "action": verdict.get("action"),
            "decided": verdict["decided"],
            "policy": policy.value,
            "debateSummary": {
                "topic": debate.get("topic", ""),
                "roundCount": len(rounds),
                "participantCount": len(votes),
            },
            "_meta": {"executor": self.name, "fallback": fallback},
        })

    @staticmethod
    def _apply_action(verdict: Dict[str, Any], config: Mapping[str, Any]):
        if not config.get("outputAction", True):
            return
        action_map = dict(DEFAULT_ACTION_MAP)
        action_map.update(thaw(config.get("actionMap", {})))
        action = action_map.get(verdict["stance"], "HOLD") if verdict["decided"] else "HOLD"

        min_confidence = read_number(config.get("minConfidenceForAction"))
        if min_confidence is None:
            min_confidence = DEFAULT_MIN_CONFIDENCE_FOR_ACTION
        if verdict["confidence"] < min_confidence:
            verdict["actionOverridden"] = True
            verdict["actionOverrideReason"] = (
                f"confidence {verdict['confidence']} below threshold {min_confidence:g}"
            )
            action = REVIEW_ONLY_ACTION
        verdict["action"] = action
