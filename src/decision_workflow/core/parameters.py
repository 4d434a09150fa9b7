"""
参数快照与输入绑定解析
"""
import logging
import re
from typing import Any, Dict, Iterable, Mapping, Optional

from ..exceptions import WorkflowEngineError
from ..integrations.references import ReferenceRegistry
from ..models.frozen import freeze, thaw
from .expressions import read_value_by_path


logger = logging.getLogger(__name__)

# ${nodeId.path} 或 ${params.KEY}
_REFERENCE_PATTERN = re.compile(r"^\$\{([^}]+)\}$")
PARAMS_NAMESPACE = "params"


class ParameterResolver:
    """参数解析器：按绑定顺序合并参数集，再叠加触发参数"""

    def __init__(self, references: Optional[ReferenceRegistry] = None):
        self.references = references

    def resolve(
        self,
        param_set_codes: Iterable[str],
        overrides: Optional[Mapping[str, Any]] = None
    ) -> Mapping[str, Any]:
        """
        生成本次执行的不可变参数快照

        Args:
            param_set_codes: DSL 绑定的参数集编码，后者覆盖前者
            overrides: 触发请求携带的参数

        Returns:
            只读参数映射
        """
        merged: Dict[str, Any] = {}
        for set_code in param_set_codes:
            parameter_set = self.references.get_parameter_set(set_code) if self.references else None
            if parameter_set is None:
                raise WorkflowEngineError(f"Parameter set '{set_code}' is not available")
            for item in parameter_set.items:
                if item.active:
                    merged[item.param_code] = thaw(item.value)

        if overrides:
            merged.update(thaw(overrides))
        return freeze(merged)


class VariableResolver:
    """输入绑定解析器"""

    def __init__(self, outputs: Mapping[str, Any], params: Mapping[str, Any]):
        self.outputs = outputs
        self.params = params

    def resolve_value(self, expression: Any) -> Any:
        """解析单个绑定：引用表达式或字面量"""
        if not isinstance(expression, str):
            return thaw(expression)
        match = _REFERENCE_PATTERN.match(expression.strip())
        if not match:
            return expression

        path = match.group(1).strip()
        head, _, rest = path.partition(".")
        if head == PARAMS_NAMESPACE:
            return thaw(read_value_by_path(self.params, rest))
        if head not in self.outputs:
            return None
        return thaw(read_value_by_path(self.outputs[head], rest))

    def resolve(self, bindings: Mapping[str, Any]) -> Dict[str, Any]:
        """解析全部绑定"""
        return {name: self.resolve_value(expression) for name, expression in bindings.items()}
