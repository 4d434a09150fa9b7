"""
API 路由器
"""

from . import workflows, executions, experiments, monitoring

__all__ = ["workflows", "executions", "experiments", "monitoring"]
