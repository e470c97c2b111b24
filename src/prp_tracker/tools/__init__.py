"""
Named storage actions for the tool-dispatch layer.
"""

from .storage_tools import StorageTool, ToolExecutionResult, ToolRegistry, execute_action, get_all_tools

__all__ = ["StorageTool", "ToolExecutionResult", "ToolRegistry", "execute_action", "get_all_tools"]
