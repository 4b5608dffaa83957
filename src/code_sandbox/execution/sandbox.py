"""
Sandboxed code execution.

Every run gets a fresh child process working in a fresh temporary directory.
The child applies resource limits, installs the capability policy, captures
stdout/stderr into a sink that streams each chunk back over a pipe, and then
executes the snippet. The parent appends streamed chunks to the caller's sink
as they arrive, enforces the deadline and cancellation, and always reaps the
child and removes the directory.
"""

from __future__ import annotations

import io
import linecache
import multiprocessing
import os
import shutil
import signal
import sys
import tempfile
import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

try:
    import resource
except ImportError:
    resource = None  # type: ignore[assignment]

from code_sandbox.config.settings import SandboxSettings, get_settings
from code_sandbox.execution.capture import STREAM_NAMES, OutputCaptureSink, OutputLimitExceeded
from code_sandbox.guardrails.capabilities import (
    CapabilityDenied,
    build_globals,
    compile_snippet,
    interpreter_read_roots,
    make_audit_hook,
    seal_unaudited_primitives,
)
from code_sandbox.models.execution import Capability, ErrorKind, ExecutionRequest

SNIPPET_FILENAME = "<sandbox>"

# Child exit signals that mean a resource limit was enforced by the kernel
_LIMIT_SIGNALS = frozenset(
    s for s in (getattr(signal, "SIGXCPU", None), getattr(signal, "SIGKILL", None)) if s is not None
)


# -----------------------------------------------------------------------------
# Errors, cancellation, context
# -----------------------------------------------------------------------------


class SandboxError(Exception):
    """An execution that did not complete, with its ErrorKind."""

    def __init__(self, kind: ErrorKind, message: str, traceback: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.traceback = traceback


class CancellationToken:
    """Thread-safe, set-once cancellation flag shared between a caller and a running execution."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason = ""

    def cancel(self, reason: str = "Execution cancelled by caller") -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass
class SandboxContext:
    """
    Evaluation context for one request: grants, limits, timer and cancellation.

    A context is consumed by the run that uses it; running it again raises.
    """

    capabilities: FrozenSet[Capability] = frozenset()
    timeout_seconds: float = 5.0
    max_memory_mb: Optional[int] = None
    max_cpu_seconds: Optional[int] = None
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    workdir: Optional[str] = None
    started_at: Optional[float] = None
    unapplied_limits: Tuple[str, ...] = ()
    _claimed: bool = field(default=False, repr=False)

    @classmethod
    def for_request(
        cls,
        request: ExecutionRequest,
        settings: SandboxSettings,
        cancel_token: Optional[CancellationToken] = None,
    ) -> "SandboxContext":
        """Resolve request values against configured defaults and ceilings."""
        timeout_ms = min(request.timeout_ms or settings.default_timeout_ms, settings.max_timeout_ms)
        limits = request.limits
        return cls(
            capabilities=frozenset(request.capabilities),
            timeout_seconds=timeout_ms / 1000.0,
            max_memory_mb=limits.max_memory_mb or settings.max_memory_mb,
            max_cpu_seconds=limits.max_cpu_seconds or settings.max_cpu_seconds,
            cancel_token=cancel_token or CancellationToken(),
        )

    def claim(self) -> None:
        if self._claimed:
            raise RuntimeError("SandboxContext has already been used; create a fresh one per execution")
        self._claimed = True


# -----------------------------------------------------------------------------
# Child process side
# -----------------------------------------------------------------------------


def _within(path: str, roots: Tuple[str, ...]) -> bool:
    return any(path == root or path.startswith(root + os.sep) for root in roots)


def _current_address_space() -> int:
    """Bytes of address space mapped by this process (Linux), else 0."""
    try:
        with open("/proc/self/statm", encoding="ascii") as f:
            pages = int(f.read().split()[0])
        return pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError):
        return 0


def _apply_resource_limits(max_memory_mb: Optional[int], max_cpu_seconds: Optional[int]) -> List[str]:
    """
    Set CPU and memory limits for the current process (Unix only).

    Each limit is applied on its own; returns the names of requested limits
    that could not be applied.
    """
    requested = [name for name, value in (("max_cpu_seconds", max_cpu_seconds), ("max_memory_mb", max_memory_mb)) if value]
    if resource is None:
        return requested
    unapplied = []
    if max_cpu_seconds:
        try:
            resource.setrlimit(resource.RLIMIT_CPU, (max_cpu_seconds, max_cpu_seconds + 1))
        except (ValueError, OSError):
            unapplied.append("max_cpu_seconds")
    if max_memory_mb:
        # RLIMIT_AS counts what is already mapped, so the limit is headroom on top of it
        as_bytes = _current_address_space() + max_memory_mb * 1024 * 1024
        try:
            resource.setrlimit(resource.RLIMIT_AS, (as_bytes, as_bytes))
        except (ValueError, OSError):
            unapplied.append("max_memory_mb")
    return unapplied


def _describe(exc: BaseException) -> str:
    try:
        lines = traceback.format_exception_only(type(exc), exc)
        return lines[-1].strip() if lines else type(exc).__name__
    except Exception:
        return type(exc).__name__


def _snippet_traceback(exc: BaseException) -> Optional[str]:
    """Format exc starting from the first frame that belongs to the snippet."""
    tb = exc.__traceback__
    while tb is not None and tb.tb_frame.f_code.co_filename != SNIPPET_FILENAME:
        tb = tb.tb_next
    try:
        return "".join(traceback.format_exception(type(exc), exc, tb))
    except Exception:
        return None


def _error(kind: ErrorKind, exc: BaseException, message: Optional[str] = None) -> Dict[str, Any]:
    if kind == ErrorKind.SYNTAX_ERROR:
        tb = "".join(traceback.format_exception_only(type(exc), exc))
    else:
        tb = _snippet_traceback(exc)
    return {"status": "error", "kind": kind.value, "message": message or _describe(exc), "traceback": tb}


def _run_snippet(code: str, namespace: Dict[str, Any]) -> Dict[str, Any]:
    """Compile and execute code; classify every way it can end."""
    try:
        compiled = compile_snippet(code, SNIPPET_FILENAME)
    except (SyntaxError, ValueError) as exc:
        return _error(ErrorKind.SYNTAX_ERROR, exc)
    except CapabilityDenied as exc:
        return _error(ErrorKind.RUNTIME_ERROR, exc)
    try:
        exec(compiled, namespace)
    except SystemExit as exc:
        if exc.code in (None, 0):
            return {"status": "ok"}
        return _error(ErrorKind.RUNTIME_ERROR, exc, message=f"SystemExit: {exc.code}")
    except MemoryError as exc:
        return _error(ErrorKind.RESOURCE_LIMIT_EXCEEDED, exc, message="MemoryError: memory limit exceeded")
    except BaseException as exc:
        return _error(ErrorKind.RUNTIME_ERROR, exc)
    return {"status": "ok"}


def _child_main(
    code: str,
    conn: Any,
    granted_values: Tuple[str, ...],
    environ: Dict[str, str],
    limits: Dict[str, Optional[int]],
    workdir: str,
    streams: Tuple[str, ...],
    read_roots: Tuple[str, ...],
) -> None:
    """Entry point of the sandbox process."""
    granted = frozenset(Capability(v) for v in granted_values)
    sys.dont_write_bytecode = True
    os.chdir(workdir)
    sys.stdin = io.StringIO("")
    # only what the parent passed; empty unless the environment capability is granted
    os.environ.clear()
    os.environ.update(environ)
    unapplied = _apply_resource_limits(limits.get("max_memory_mb"), limits.get("max_cpu_seconds"))

    namespace = build_globals(granted)
    linecache.cache[SNIPPET_FILENAME] = (len(code), None, code.splitlines(True), SNIPPET_FILENAME)
    # imports resolve from the library roots only, never from project directories
    sys.path[:] = [p for p in sys.path if p and _within(os.path.realpath(p), read_roots)]
    seal_unaudited_primitives(granted)
    sys.addaudithook(make_audit_hook(granted, read_roots))

    sink = OutputCaptureSink(listener=lambda chunk: conn.send(("chunk", chunk)), streams=streams, retain=False)
    token = sink.install()
    conn.send(("ready", {"pid": os.getpid(), "unapplied_limits": unapplied}))
    try:
        outcome = _run_snippet(code, namespace)
    finally:
        sink.restore(token)
    conn.send(("done", outcome))
    conn.close()


# -----------------------------------------------------------------------------
# Parent side
# -----------------------------------------------------------------------------


def _stop_process(process: Any) -> Optional[int]:
    """Terminate (then kill) the child if it is still running; return its exit code."""
    if process.pid is None:
        return None
    if process.is_alive():
        process.terminate()
        process.join(1.0)
        if process.is_alive():
            process.kill()
            process.join(1.0)
    else:
        process.join(0.1)
    exitcode = process.exitcode
    if exitcode is not None:
        process.close()
    return exitcode


class ExecutionSandbox:
    """
    Runs one snippet per call in an isolated, disposable process.

    run() returns normally when the snippet completes and raises SandboxError
    for every other outcome. Output reaches the given sink chunk by chunk, so
    whatever was written before a failure is already in the sink.
    """

    def __init__(self, settings: Optional[SandboxSettings] = None) -> None:
        self.settings = settings or get_settings().sandbox
        self._mp = multiprocessing.get_context(self.settings.start_method)

    def run(self, code: str, context: SandboxContext, sink: OutputCaptureSink) -> None:
        context.claim()
        if context.cancel_token.cancelled:
            raise SandboxError(ErrorKind.CANCELLED, context.cancel_token.reason)

        workdir = tempfile.mkdtemp(prefix="code_sandbox_")
        context.workdir = workdir
        streams = STREAM_NAMES if self.settings.capture_stderr else ("stdout",)
        granted = tuple(c.value for c in context.capabilities)
        environ = dict(os.environ) if Capability.ENVIRONMENT in context.capabilities else {}
        limits = {"max_memory_mb": context.max_memory_mb, "max_cpu_seconds": context.max_cpu_seconds}
        # computed here: the child has already left the caller's working directory
        read_roots = interpreter_read_roots()
        recv_conn, send_conn = self._mp.Pipe(duplex=False)
        process = self._mp.Process(
            target=_child_main,
            args=(code, send_conn, granted, environ, limits, workdir, streams, read_roots),
            name="code-sandbox",
            daemon=True,
        )
        exitcode: Optional[int] = None
        try:
            process.start()
            send_conn.close()
            outcome = self._pump(recv_conn, context, sink)
        finally:
            send_conn.close()
            exitcode = _stop_process(process)
            recv_conn.close()
            shutil.rmtree(workdir, ignore_errors=True)

        if outcome is None:
            if exitcode is not None and exitcode < 0 and -exitcode in _LIMIT_SIGNALS:
                name = signal.Signals(-exitcode).name
                raise SandboxError(ErrorKind.RESOURCE_LIMIT_EXCEEDED, f"Sandbox process killed by {name}")
            raise SandboxError(ErrorKind.RUNTIME_ERROR, f"Sandbox process exited unexpectedly (exit code {exitcode})")
        if outcome.get("status") == "ok":
            return
        raise SandboxError(ErrorKind(outcome["kind"]), outcome["message"], outcome.get("traceback"))

    def _pump(self, conn: Any, context: SandboxContext, sink: OutputCaptureSink) -> Optional[Dict[str, Any]]:
        """Move chunks into the sink until the child reports, dies, times out or is cancelled."""
        poll = self.settings.poll_interval_ms / 1000.0
        deadline = time.monotonic() + self.settings.startup_timeout_seconds
        started = False
        while True:
            if context.cancel_token.cancelled:
                raise SandboxError(ErrorKind.CANCELLED, context.cancel_token.reason)
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if started:
                    raise SandboxError(
                        ErrorKind.TIMEOUT,
                        f"Execution exceeded the {int(context.timeout_seconds * 1000)} ms timeout",
                    )
                raise SandboxError(
                    ErrorKind.TIMEOUT,
                    f"Sandbox process did not start within {self.settings.startup_timeout_seconds} seconds",
                )
            if not conn.poll(min(poll, remaining)):
                continue
            try:
                kind, payload = conn.recv()
            except (EOFError, OSError):
                return None
            if kind == "chunk":
                try:
                    sink.append(payload)
                except OutputLimitExceeded as exc:
                    raise SandboxError(ErrorKind.RESOURCE_LIMIT_EXCEEDED, str(exc)) from exc
            elif kind == "ready":
                started = True
                context.started_at = time.monotonic()
                context.unapplied_limits = tuple(payload.get("unapplied_limits", ()))
                deadline = context.started_at + context.timeout_seconds
            elif kind == "done":
                return payload
