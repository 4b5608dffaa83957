"""Pydantic models for execution requests and results."""

from code_sandbox.models.execution import (
    Capability,
    ErrorKind,
    ExecutionFailure,
    ExecutionRequest,
    ExecutionResult,
    ExecutionSuccess,
    ResourceLimits,
)

__all__ = [
    "Capability",
    "ErrorKind",
    "ExecutionFailure",
    "ExecutionRequest",
    "ExecutionResult",
    "ExecutionSuccess",
    "ResourceLimits",
]
