"""
Schema验证器实现
"""
from typing import Dict, Any, List
import json
import logging

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError


logger = logging.getLogger(__name__)


class SchemaValidator:
    """智能体输出 JSON Schema 验证器"""

    def __init__(self):
        self.validators_cache: Dict[str, Draft7Validator] = {}

    def validate(self, data: Any, schema: Dict[str, Any]) -> List[str]:
        """
        验证数据是否符合schema定义

        Args:
            data: 待验证的数据
            schema: JSON Schema定义

        Returns:
            验证错误列表，如果没有错误返回空列表
        """
        schema_str = json.dumps(schema, sort_keys=True, default=str)
        validator = self.validators_cache.get(schema_str)
        if validator is None:
            try:
                Draft7Validator.check_schema(schema)
            except SchemaError as e:
                logger.warning(f"Invalid output schema: {e.message}")
                return [f"Invalid schema: {e.message}"]
            validator = Draft7Validator(schema)
            self.validators_cache[schema_str] = validator

        # 收集所有验证错误
        errors = []
        for error in validator.iter_errors(data):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")

        return errors
