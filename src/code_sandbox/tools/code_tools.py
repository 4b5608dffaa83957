"""
CrewAI tool adapter for the execution coordinator.

The agent supplies code and an optional timeout; the capabilities granted to
that code are fixed by whoever constructs the tool.
"""

from __future__ import annotations

import json
from typing import Any, FrozenSet, List, Optional, Type

from crewai.tools import BaseTool
from pydantic import BaseModel, Field

from code_sandbox.execution.coordinator import ExecutionCoordinator, get_coordinator
from code_sandbox.models.execution import Capability, ExecutionRequest


class ExecuteCodeInput(BaseModel):
    """Input for execute_code tool."""

    code: str = Field(..., description="Python code to run in the sandbox.")
    timeout_ms: Optional[int] = Field(default=None, gt=0, description="Timeout in milliseconds.")


class ExecuteCodeTool(BaseTool):
    """Run Python code in the sandbox and return its captured output or a typed failure."""

    name: str = "execute_code"
    description: str = (
        "Execute Python code in an isolated sandbox and return everything it printed. "
        "No filesystem, network, subprocess, or environment access unless granted. "
        "Returns JSON: {\"output\"} on success, {\"errorKind\", \"message\", \"partialOutput\"} on failure."
    )
    args_schema: Type[BaseModel] = ExecuteCodeInput
    capabilities: FrozenSet[Capability] = Field(default_factory=frozenset)
    coordinator: Optional[Any] = Field(default=None, exclude=True)

    def _coordinator(self) -> ExecutionCoordinator:
        return self.coordinator or get_coordinator()

    def _run(self, code: str, timeout_ms: Optional[int] = None) -> str:
        request = ExecutionRequest(code=code, timeout_ms=timeout_ms, capabilities=self.capabilities)
        result = self._coordinator().execute(request)
        return json.dumps(result.to_response())


def get_code_tools(capabilities: Optional[FrozenSet[Capability]] = None) -> List[BaseTool]:
    """Return list of CrewAI BaseTool instances for sandboxed code execution."""
    return [ExecuteCodeTool(capabilities=frozenset(capabilities or ()))]
