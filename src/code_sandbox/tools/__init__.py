"""Agent-framework tools wrapping sandboxed code execution."""

from code_sandbox.tools.code_tools import ExecuteCodeInput, ExecuteCodeTool, get_code_tools

__all__ = ["ExecuteCodeInput", "ExecuteCodeTool", "get_code_tools"]
