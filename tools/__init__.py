"""Tools package: backend function-calling execution"""
from .tool_executor import ToolExecutor

__all__ = ['ToolExecutor']
