"""Output capture, sandboxed execution, and the coordinator that ties them together."""

from code_sandbox.execution.capture import CaptureToken, OutputCaptureSink, OutputLimitExceeded
from code_sandbox.execution.coordinator import (
    ExecutionCoordinator,
    execute_code,
    get_coordinator,
    result_from_json,
)
from code_sandbox.execution.sandbox import CancellationToken, ExecutionSandbox, SandboxContext, SandboxError

__all__ = [
    "CancellationToken",
    "CaptureToken",
    "ExecutionCoordinator",
    "ExecutionSandbox",
    "OutputCaptureSink",
    "OutputLimitExceeded",
    "SandboxContext",
    "SandboxError",
    "execute_code",
    "get_coordinator",
    "result_from_json",
]
