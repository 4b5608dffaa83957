"""
Pydantic models for a single sandboxed execution.

ExecutionRequest is what a caller hands to the coordinator; ExecutionResult is
either ExecutionSuccess or ExecutionFailure. Both results serialize to the
public response shape via to_response().
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class Capability(str, Enum):
    """A permission the sandbox may grant to executed code. Nothing is granted by default."""

    FILESYSTEM = "filesystem"
    NETWORK = "network"
    SUBPROCESS = "subprocess"
    ENVIRONMENT = "environment"


class ErrorKind(str, Enum):
    """Why an execution did not succeed."""

    SYNTAX_ERROR = "SyntaxError"
    RUNTIME_ERROR = "RuntimeError"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    RESOURCE_LIMIT_EXCEEDED = "ResourceLimitExceeded"


class ResourceLimits(BaseModel):
    """Per-request resource caps. None means use the configured default."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max_memory_mb: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices("max_memory_mb", "maxMemoryMb"),
        description="Address-space headroom in MiB granted to the snippet process",
    )
    max_cpu_seconds: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices("max_cpu_seconds", "maxCpuSeconds"),
        description="CPU time limit in seconds",
    )
    max_output_chars: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices("max_output_chars", "maxOutputChars"),
        description="Maximum number of captured characters",
    )


class ExecutionRequest(BaseModel):
    """One request to execute a code snippet. Immutable once created."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    code: str = Field(..., description="Python source to execute; empty code is a valid no-op")
    timeout_ms: Optional[int] = Field(
        default=None,
        gt=0,
        validation_alias=AliasChoices("timeout_ms", "timeoutMillis"),
        description="Wall-clock timeout in milliseconds (None = configured default)",
    )
    capabilities: FrozenSet[Capability] = Field(
        default_factory=frozenset,
        description="Capabilities explicitly granted to this request",
    )
    limits: ResourceLimits = Field(default_factory=ResourceLimits, description="Resource caps")


class ExecutionSuccess(BaseModel):
    """The snippet ran to completion."""

    status: Literal["success"] = "success"
    output: str = Field(default="", description="Exact concatenation of all captured writes")
    duration_seconds: float = Field(default=0.0, description="Wall-clock duration in seconds")

    def is_success(self) -> bool:
        return True

    def to_response(self) -> Dict[str, Any]:
        return {"output": self.output}


class ExecutionFailure(BaseModel):
    """The snippet did not complete. Output captured before the fault is kept."""

    status: Literal["failure"] = "failure"
    error_kind: ErrorKind = Field(..., serialization_alias="errorKind", description="Failure category")
    message: str = Field(default="", description="Human-readable description of the failure")
    partial_output: str = Field(
        default="",
        serialization_alias="partialOutput",
        description="Output captured before the failure",
    )
    traceback: Optional[str] = Field(default=None, description="Traceback limited to snippet frames")
    duration_seconds: float = Field(default=0.0, description="Wall-clock duration in seconds")

    def is_success(self) -> bool:
        return False

    def to_response(self) -> Dict[str, Any]:
        return {
            "errorKind": self.error_kind.value,
            "message": self.message,
            "partialOutput": self.partial_output,
        }


ExecutionResult = Annotated[Union[ExecutionSuccess, ExecutionFailure], Field(discriminator="status")]
