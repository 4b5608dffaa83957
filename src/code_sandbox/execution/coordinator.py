"""
Execution coordinator: one request in, one typed result out.

The coordinator owns the capture discipline. For every call it installs a
fresh sink in the caller's context, hands a fresh SandboxContext to the
sandbox, restores the sink exactly once on every exit path, and turns each
outcome into ExecutionSuccess or ExecutionFailure. It never raises for
anything the executed code does.
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Any, Dict, Mapping, Optional

import structlog
from pydantic import TypeAdapter

from code_sandbox.config.settings import Settings, get_settings
from code_sandbox.execution.capture import OutputCaptureSink
from code_sandbox.execution.sandbox import CancellationToken, ExecutionSandbox, SandboxContext, SandboxError
from code_sandbox.guardrails.security import code_policy_guardrail
from code_sandbox.models.execution import (
    Capability,
    ErrorKind,
    ExecutionFailure,
    ExecutionRequest,
    ExecutionResult,
    ExecutionSuccess,
    ResourceLimits,
)

logger = structlog.get_logger(__name__)

_result_adapter: TypeAdapter[ExecutionResult] = TypeAdapter(ExecutionResult)


def _audit_log(operation: str, *, extra: Optional[dict[str, Any]] = None) -> None:
    """Emit audit log for code execution."""
    payload = {"operation": operation, "timestamp": time.time()}
    if extra:
        payload.update(extra)
    logger.info("sandbox_audit", **payload)


class ExecutionCoordinator:
    """Runs ExecutionRequests through the sandbox with scoped output capture."""

    def __init__(self, settings: Optional[Settings] = None, sandbox: Optional[ExecutionSandbox] = None) -> None:
        self.settings = settings or get_settings()
        self.sandbox = sandbox or ExecutionSandbox(self.settings.sandbox)
        self._slots = threading.BoundedSemaphore(self.settings.sandbox.max_concurrent_executions)

    def execute(self, request: ExecutionRequest, cancel_token: Optional[CancellationToken] = None) -> ExecutionResult:
        """Execute one request. Every outcome, including faults, comes back as a result value."""
        start = time.perf_counter()
        _audit_log(
            "execute",
            extra={
                "code_length": len(request.code),
                "timeout_ms": request.timeout_ms,
                "capabilities": sorted(c.value for c in request.capabilities),
            },
        )
        token = cancel_token or CancellationToken()
        try:
            rejection = self._preflight(request)
            if rejection is not None:
                result: ExecutionResult = rejection
            elif not self._acquire_slot(token):
                result = ExecutionFailure(error_kind=ErrorKind.CANCELLED, message=token.reason)
            else:
                try:
                    result = self._run(request, token)
                finally:
                    self._slots.release()
        except Exception as e:
            logger.exception("execution_internal_error", error=str(e))
            result = ExecutionFailure(error_kind=ErrorKind.RUNTIME_ERROR, message=f"Internal sandbox error: {e}")

        result.duration_seconds = round(time.perf_counter() - start, 3)
        logger.info(
            "execution_finished",
            status=result.status,
            error_kind=None if result.is_success() else result.error_kind.value,
            duration_seconds=result.duration_seconds,
        )
        return result

    async def execute_async(
        self, request: ExecutionRequest, cancel_token: Optional[CancellationToken] = None
    ) -> ExecutionResult:
        """Run execute() on a worker thread. Cancelling the awaiting task cancels the execution."""
        token = cancel_token or CancellationToken()
        try:
            return await asyncio.to_thread(self.execute, request, token)
        except asyncio.CancelledError:
            token.cancel("Execution cancelled: awaiting task was cancelled")
            raise

    def execute_payload(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Execute a request given in the public input shape and return the public output shape.

        Input: {"code", "timeoutMillis"?, "capabilities"?, "limits"?}.
        Output: {"output"} or {"errorKind", "message", "partialOutput"}.
        Raises pydantic.ValidationError for malformed input.
        """
        request = ExecutionRequest.model_validate(dict(payload))
        return self.execute(request).to_response()

    # -------------------------------------------------------------------------

    def _preflight(self, request: ExecutionRequest) -> Optional[ExecutionFailure]:
        """Refuse requests the configuration or the static policy does not allow."""
        sandbox_settings = self.settings.sandbox
        not_allowed = sorted(c.value for c in request.capabilities if c not in sandbox_settings.allowed_capabilities)
        if not_allowed:
            logger.warning("capability_not_allowed", capabilities=not_allowed)
            return ExecutionFailure(
                error_kind=ErrorKind.RUNTIME_ERROR,
                message=f"Capabilities not permitted by sandbox configuration: {', '.join(not_allowed)}",
            )
        if sandbox_settings.static_guard_enabled:
            check = code_policy_guardrail(request.code, request.capabilities)
            if check.should_block():
                logger.warning("code_policy_blocked", message=check.message)
                return ExecutionFailure(error_kind=ErrorKind.RUNTIME_ERROR, message=check.message)
            if check.status == "warn":
                logger.warning("code_policy_warning", message=check.message)
        return None

    def _acquire_slot(self, token: CancellationToken) -> bool:
        poll = self.settings.sandbox.poll_interval_ms / 1000.0
        while not self._slots.acquire(timeout=poll):
            if token.cancelled:
                return False
        if token.cancelled:
            self._slots.release()
            return False
        return True

    def _run(self, request: ExecutionRequest, token: CancellationToken) -> ExecutionResult:
        sandbox_settings = self.settings.sandbox
        context = SandboxContext.for_request(request, sandbox_settings, token)
        max_chars = request.limits.max_output_chars or sandbox_settings.max_output_chars
        sink = OutputCaptureSink(max_chars=max_chars)
        # No logging between install and restore: log lines would land in the sink
        capture = sink.install()
        try:
            self.sandbox.run(request.code, context, sink)
            result: ExecutionResult = ExecutionSuccess(output=sink.getvalue())
        except SandboxError as e:
            result = ExecutionFailure(
                error_kind=e.kind,
                message=e.message,
                partial_output=sink.getvalue(),
                traceback=e.traceback,
            )
        finally:
            sink.restore(capture)
        if context.unapplied_limits:
            logger.warning("resource_limits_not_applied", limits=list(context.unapplied_limits))
        return result


# Global coordinator instance
_coordinator: Optional[ExecutionCoordinator] = None
_coordinator_lock = threading.Lock()


def get_coordinator() -> ExecutionCoordinator:
    """Get or create the global coordinator (uses the global settings)."""
    global _coordinator
    with _coordinator_lock:
        if _coordinator is None:
            _coordinator = ExecutionCoordinator()
        return _coordinator


def execute_code(
    code: str,
    timeout_ms: Optional[int] = None,
    capabilities: Optional[list[Capability]] = None,
    limits: Optional[ResourceLimits] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> ExecutionResult:
    """Execute code with the global coordinator and return its result."""
    request = ExecutionRequest(
        code=code,
        timeout_ms=timeout_ms,
        capabilities=frozenset(capabilities or ()),
        limits=limits or ResourceLimits(),
    )
    return get_coordinator().execute(request, cancel_token=cancel_token)


def result_from_json(data: str) -> ExecutionResult:
    """Parse a result previously serialized with model_dump_json()."""
    return _result_adapter.validate_json(data)
