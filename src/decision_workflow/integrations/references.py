"""
外部引用注册表

集中登记工作流版本可能引用的外部实体：数据连接器、规则包、智能体配置、
参数集、提示词模板与模型配置。发布前一致性校验与执行期快照均从这里读取。
"""
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple, Union

import yaml

from ..exceptions import WorkflowEngineError
from ..models.rules import DecisionRulePack, ParameterSet


logger = logging.getLogger(__name__)


class ReferenceKind(Enum):
    """引用类别"""
    CONNECTOR = "connector"
    RULE_PACK = "rule_pack"
    AGENT_PROFILE = "agent_profile"
    PARAMETER_SET = "parameter_set"
    PARAMETER = "parameter"
    PROMPT_TEMPLATE = "prompt_template"
    MODEL_CONFIG = "model_config"


@dataclass(frozen=True)
class ConnectorDefinition:
    """数据连接器定义"""
    connector_code: str
    connector_type: str = "REST_API"
    endpoint: Optional[str] = None
    active: bool = True


@dataclass(frozen=True)
class AgentProfile:
    """智能体配置"""
    agent_code: str
    role_type: str = "ANALYST"
    prompt_template_code: Optional[str] = None
    model_config_key: Optional[str] = None
    output_schema: Optional[Mapping[str, Any]] = None
    weight: float = 1.0
    active: bool = True


class ReferenceRegistry:
    """外部实体注册表（内存实现）"""

    def __init__(self):
        self.connectors: Dict[str, ConnectorDefinition] = {}
        self.rule_packs: Dict[str, DecisionRulePack] = {}
        self.agent_profiles: Dict[str, AgentProfile] = {}
        self.parameter_sets: Dict[str, ParameterSet] = {}
        self.prompt_templates: Dict[str, bool] = {}
        self.model_configs: Dict[str, bool] = {}

    def register_connector(self, connector: ConnectorDefinition):
        self.connectors[connector.connector_code] = connector

    def register_rule_pack(self, pack: DecisionRulePack):
        """登记规则包，同编码保留最高版本"""
        existing = self.rule_packs.get(pack.rule_pack_code)
        if existing and existing.version > pack.version:
            logger.debug(f"Ignoring older rule pack {pack.rule_pack_code} v{pack.version}")
            return
        self.rule_packs[pack.rule_pack_code] = pack

    def register_agent_profile(self, profile: AgentProfile):
        self.agent_profiles[profile.agent_code] = profile

    def register_parameter_set(self, parameter_set: ParameterSet):
        existing = self.parameter_sets.get(parameter_set.set_code)
        if existing and existing.version > parameter_set.version:
            return
        self.parameter_sets[parameter_set.set_code] = parameter_set

    def register_prompt_template(self, template_code: str, active: bool = True):
        self.prompt_templates[template_code] = active

    def register_model_config(self, config_key: str, active: bool = True):
        self.model_configs[config_key] = active

    def get_agent_profile(self, agent_code: str) -> Optional[AgentProfile]:
        profile = self.agent_profiles.get(agent_code)
        return profile if profile and profile.active else None

    def get_parameter_set(self, set_code: str) -> Optional[ParameterSet]:
        parameter_set = self.parameter_sets.get(set_code)
        return parameter_set if parameter_set and parameter_set.active else None

    def get_connector(self, connector_code: str) -> Optional[ConnectorDefinition]:
        connector = self.connectors.get(connector_code)
        return connector if connector and connector.active else None

    def get_rule_packs(self, codes: Iterable[str]) -> Tuple[DecisionRulePack, ...]:
        """按编码取活跃规则包"""
        packs = []
        for code in codes:
            pack = self.rule_packs.get(code)
            if pack and pack.active:
                packs.append(pack)
        return tuple(packs)

    def is_active(self, kind: ReferenceKind, code: str, scope: Optional[str] = None) -> bool:
        """
        检查引用是否解析为活跃实体

        Args:
            kind: 引用类别
            code: 引用编码
            scope: 参数引用所属参数集编码（仅 PARAMETER 使用）
        """
        if kind == ReferenceKind.CONNECTOR:
            return self.get_connector(code) is not None
        if kind == ReferenceKind.RULE_PACK:
            pack = self.rule_packs.get(code)
            return bool(pack and pack.active)
        if kind == ReferenceKind.AGENT_PROFILE:
            return self.get_agent_profile(code) is not None
        if kind == ReferenceKind.PARAMETER_SET:
            return self.get_parameter_set(code) is not None
        if kind == ReferenceKind.PARAMETER:
            parameter_set = self.get_parameter_set(scope) if scope else None
            item = parameter_set.get(code) if parameter_set else None
            return bool(item and item.active)
        if kind == ReferenceKind.PROMPT_TEMPLATE:
            return self.prompt_templates.get(code, False)
        if kind == ReferenceKind.MODEL_CONFIG:
            return self.model_configs.get(code, False)
        return False

    def load_catalog(self, catalog: Mapping[str, Any]):
        """
        从目录文档批量登记外部实体

        目录结构::

            connectors: [{connectorCode, connectorType, endpoint, active}]
            rulePacks: [规则包文档]
            agentProfiles: [{agentCode, roleType, promptTemplateCode, modelConfigKey, weight, active}]
            parameterSets: [参数集文档]
            promptTemplates: [编码]
            modelConfigs: [编码]
        """
        for item in catalog.get("connectors", []) or []:
            self.register_connector(ConnectorDefinition(
                connector_code=item["connectorCode"],
                connector_type=item.get("connectorType", "REST_API"),
                endpoint=item.get("endpoint"),
                active=item.get("active", True),
            ))
        for item in catalog.get("rulePacks", []) or []:
            self.register_rule_pack(DecisionRulePack.from_dict(item))
        for item in catalog.get("agentProfiles", []) or []:
            self.register_agent_profile(AgentProfile(
                agent_code=item["agentCode"],
                role_type=item.get("roleType", "ANALYST"),
                prompt_template_code=item.get("promptTemplateCode"),
                model_config_key=item.get("modelConfigKey"),
                output_schema=item.get("outputSchema"),
                weight=float(item.get("weight", 1.0)),
                active=item.get("active", True),
            ))
        for item in catalog.get("parameterSets", []) or []:
            self.register_parameter_set(ParameterSet.from_dict(item))
        for code in catalog.get("promptTemplates", []) or []:
            self.register_prompt_template(code)
        for code in catalog.get("modelConfigs", []) or []:
            self.register_model_config(code)
        logger.info(
            f"Loaded reference catalog: {len(self.connectors)} connectors, "
            f"{len(self.rule_packs)} rule packs, {len(self.agent_profiles)} agent profiles, "
            f"{len(self.parameter_sets)} parameter sets"
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'ReferenceRegistry':
        """从 YAML/JSON 目录文件构建注册表"""
        path = Path(path)
        try:
            content = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise WorkflowEngineError(f"Failed to load reference catalog {path}: {e}") from e
        if not isinstance(content, dict):
            raise WorkflowEngineError(f"Reference catalog {path} must be a mapping")
        registry = cls()
        registry.load_catalog(content)
        return registry

    def connector_endpoints(self) -> Dict[str, str]:
        """配置了地址的活跃连接器"""
        return {
            code: connector.endpoint
            for code, connector in self.connectors.items()
            if connector.active and connector.endpoint
        }
