"""Unit tests for execution request/result models and their public response shape."""

import pytest
from pydantic import TypeAdapter, ValidationError

from code_sandbox.models.execution import (
    Capability,
    ErrorKind,
    ExecutionFailure,
    ExecutionRequest,
    ExecutionResult,
    ExecutionSuccess,
    ResourceLimits,
)


class TestExecutionRequest:
    def test_defaults_grant_nothing(self) -> None:
        r = ExecutionRequest(code="print(1)")
        assert r.capabilities == frozenset()
        assert r.timeout_ms is None
        assert r.limits == ResourceLimits()

    def test_public_field_names_accepted(self) -> None:
        r = ExecutionRequest.model_validate(
            {
                "code": "",
                "timeoutMillis": 250,
                "capabilities": ["network", "filesystem"],
                "limits": {"maxMemoryMb": 64, "maxOutputChars": 100},
            }
        )
        assert r.timeout_ms == 250
        assert r.capabilities == frozenset({Capability.NETWORK, Capability.FILESYSTEM})
        assert r.limits.max_memory_mb == 64
        assert r.limits.max_output_chars == 100

    def test_empty_code_is_valid(self) -> None:
        assert ExecutionRequest(code="").code == ""

    @pytest.mark.parametrize("timeout", [0, -5])
    def test_non_positive_timeout_rejected(self, timeout: int) -> None:
        with pytest.raises(ValidationError):
            ExecutionRequest(code="", timeout_ms=timeout)

    def test_request_is_immutable(self) -> None:
        r = ExecutionRequest(code="x = 1")
        with pytest.raises(ValidationError):
            r.code = "x = 2"

    def test_limits_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            ResourceLimits(max_cpu_seconds=0)


class TestExecutionResults:
    def test_success_response(self) -> None:
        r = ExecutionSuccess(output="abc")
        assert r.is_success()
        assert r.to_response() == {"output": "abc"}

    def test_failure_response(self) -> None:
        r = ExecutionFailure(error_kind=ErrorKind.TIMEOUT, message="too slow", partial_output="tick")
        assert not r.is_success()
        assert r.to_response() == {"errorKind": "Timeout", "message": "too slow", "partialOutput": "tick"}

    def test_failure_serializes_public_aliases(self) -> None:
        dumped = ExecutionFailure(error_kind=ErrorKind.SYNTAX_ERROR, message="bad").model_dump(by_alias=True)
        assert dumped["errorKind"] == ErrorKind.SYNTAX_ERROR
        assert dumped["partialOutput"] == ""

    def test_error_kind_values(self) -> None:
        assert {k.value for k in ErrorKind} == {
            "SyntaxError",
            "RuntimeError",
            "Timeout",
            "Cancelled",
            "ResourceLimitExceeded",
        }

    def test_result_union_discriminated_by_status(self) -> None:
        adapter = TypeAdapter(ExecutionResult)
        ok = adapter.validate_python({"status": "success", "output": "x"})
        bad = adapter.validate_python({"status": "failure", "error_kind": "Cancelled"})
        assert isinstance(ok, ExecutionSuccess)
        assert isinstance(bad, ExecutionFailure)
        assert bad.error_kind == ErrorKind.CANCELLED
