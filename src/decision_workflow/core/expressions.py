"""
字段路径读取与条件表达式求值
"""
import re
from typing import Any, List, Mapping, Optional, Union


_INDEX_PATTERN = re.compile(r"^([^\[\]]*)((?:\[\d+\])*)$")
_INDEX_ITEM = re.compile(r"\[(\d+)\]")

# 边条件支持的操作符
CONDITION_OPERATORS = frozenset({
    "eq", "neq", "gt", "gte", "lt", "lte", "in", "not_in", "exists", "not_exists",
})


def split_path(path: str) -> List[Union[str, int]]:
    """
    拆分字段路径

    支持点号分隔与下标，例如 ``bars[0].close`` -> ``["bars", 0, "close"]``
    """
    segments: List[Union[str, int]] = []
    for part in path.split("."):
        if not part:
            continue
        match = _INDEX_PATTERN.match(part)
        if not match:
            segments.append(part)
            continue
        name, indexes = match.groups()
        if name:
            segments.append(name)
        segments.extend(int(index) for index in _INDEX_ITEM.findall(indexes))
    return segments


def read_value_by_path(data: Any, path: str) -> Any:
    """按路径读取值，路径不存在时返回 None"""
    if not path:
        return data
    current = data
    for segment in split_path(path):
        if current is None:
            return None
        if isinstance(segment, int):
            if isinstance(current, (list, tuple)) and -len(current) <= segment < len(current):
                current = current[segment]
            else:
                return None
        elif isinstance(current, Mapping):
            current = current.get(segment)
        else:
            current = getattr(current, segment, None)
    return current


def read_number(value: Any) -> Optional[float]:
    """读取数值，支持数字字符串；非数值返回 None"""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def is_condition_shape_valid(condition: Any) -> bool:
    """检查条件结构是否合法"""
    if condition is None or isinstance(condition, bool):
        return True
    if not isinstance(condition, Mapping):
        return False
    field_path = condition.get("field")
    operator = str(condition.get("operator", "")).lower()
    if not isinstance(field_path, str) or not field_path:
        return False
    return operator in CONDITION_OPERATORS


def _compare(actual: Any, operator: str, expected: Any) -> bool:
    if operator == "exists":
        return actual is not None
    if operator == "not_exists":
        return actual is None
    if operator == "eq":
        return actual == expected
    if operator == "neq":
        return actual != expected
    if operator in ("in", "not_in"):
        members = expected if isinstance(expected, (list, tuple, set, frozenset)) else [expected]
        contained = actual in members
        return contained if operator == "in" else not contained

    left = read_number(actual)
    right = read_number(expected)
    if left is None or right is None:
        return False
    if operator == "gt":
        return left > right
    if operator == "gte":
        return left >= right
    if operator == "lt":
        return left < right
    if operator == "lte":
        return left <= right
    return False


def evaluate_condition(condition: Any, scope: Any) -> bool:
    """
    求值边条件

    Args:
        condition: None / 布尔值 / ``{field, operator, value}``
        scope: 条件可见的数据

    Returns:
        条件是否成立
    """
    if condition is None:
        return True
    if isinstance(condition, bool):
        return condition
    field_path = condition.get("field")
    operator = str(condition.get("operator", "eq")).lower()
    actual = read_value_by_path(scope, field_path)
    return _compare(actual, operator, condition.get("value"))
