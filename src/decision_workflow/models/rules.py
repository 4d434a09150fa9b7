"""
决策规则与参数集模型
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .frozen import freeze


class RuleLayer(Enum):
    """规则层级"""
    DEFAULT = "DEFAULT"
    INDUSTRY = "INDUSTRY"
    EXPERIENCE = "EXPERIENCE"
    RUNTIME_OVERRIDE = "RUNTIME_OVERRIDE"


class RuleOperator(Enum):
    """规则操作符"""
    EQ = "EQ"
    NEQ = "NEQ"
    GT = "GT"
    GTE = "GTE"
    LT = "LT"
    LTE = "LTE"
    IN = "IN"
    NOT_IN = "NOT_IN"
    CONTAINS = "CONTAINS"
    NOT_CONTAINS = "NOT_CONTAINS"
    EXISTS = "EXISTS"
    NOT_EXISTS = "NOT_EXISTS"
    BETWEEN = "BETWEEN"


@dataclass(frozen=True)
class DecisionRule:
    """决策规则"""
    rule_code: str
    field_path: str
    operator: RuleOperator
    expected_value: Any = None
    weight: int = 1
    priority: int = 0
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DecisionRule':
        return cls(
            rule_code=data["ruleCode"],
            field_path=data["fieldPath"],
            operator=RuleOperator(str(data["operator"]).upper()),
            expected_value=freeze(data.get("expectedValue")),
            weight=data.get("weight", 1),
            priority=data.get("priority", 0),
            active=data.get("active", data.get("isActive", True)),
        )


@dataclass(frozen=True)
class DecisionRulePack:
    """决策规则包"""
    rule_pack_code: str
    rule_layer: RuleLayer
    rules: Tuple[DecisionRule, ...] = ()
    applicable_scopes: Tuple[str, ...] = ()
    priority: int = 0
    active: bool = True
    version: int = 1

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DecisionRulePack':
        """从规则包文档构建"""
        return cls(
            rule_pack_code=data["rulePackCode"],
            rule_layer=RuleLayer(str(data.get("ruleLayer", "DEFAULT")).upper()),
            rules=tuple(DecisionRule.from_dict(rule) for rule in data.get("rules", [])),
            applicable_scopes=tuple(data.get("applicableScopes", [])),
            priority=data.get("priority", 0),
            active=data.get("active", data.get("isActive", True)),
            version=data.get("version", 1),
        )

    def applies_to(self, scope: Optional[str]) -> bool:
        """规则包是否适用于给定范围，未声明范围视为全局适用"""
        if not self.applicable_scopes or scope is None:
            return True
        return scope in self.applicable_scopes or "*" in self.applicable_scopes


@dataclass(frozen=True)
class ParameterItem:
    """参数项"""
    param_code: str
    value: Any
    active: bool = True


@dataclass(frozen=True)
class ParameterSet:
    """参数集（按版本不可变）"""
    set_code: str
    version: int = 1
    items: Tuple[ParameterItem, ...] = ()
    active: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ParameterSet':
        items = data.get("items", {})
        if isinstance(items, dict):
            parsed = tuple(ParameterItem(code, freeze(value)) for code, value in items.items())
        else:
            parsed = tuple(
                ParameterItem(
                    item["paramCode"],
                    freeze(item.get("value")),
                    item.get("active", item.get("isActive", True))
                )
                for item in items
            )
        return cls(
            set_code=data["setCode"],
            version=data.get("version", 1),
            items=parsed,
            active=data.get("active", data.get("isActive", True)),
        )

    def get(self, param_code: str) -> Optional[ParameterItem]:
        for item in self.items:
            if item.param_code == param_code:
                return item
        return None
