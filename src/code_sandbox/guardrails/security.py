"""
Security guardrails for code submitted to the sandbox.

code_policy_guardrail inspects the snippet's syntax tree before anything runs
and reports imports, calls and attribute accesses that the granted
capabilities do not cover. All functions return GuardrailResult.
"""

from __future__ import annotations

import ast
from typing import Any, Dict, FrozenSet, Iterable, List, Literal, Optional

from pydantic import BaseModel, Field

from code_sandbox.guardrails.capabilities import is_blocked_attribute, module_capability
from code_sandbox.models.execution import Capability


# =============================================================================
# GUARDRAIL RESULT
# =============================================================================


class GuardrailResult(BaseModel):
    """Result of a guardrail check."""

    status: Literal["pass", "fail", "warn"] = Field(
        description="pass=allowed, fail=block, warn=log but allow"
    )
    message: str = Field(default="", description="Human-readable outcome message")
    details: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Extra data (e.g. matched findings by severity)",
    )

    def is_ok(self) -> bool:
        """True if code may run (pass or warn)."""
        return self.status in ("pass", "warn")

    def should_block(self) -> bool:
        """True if code must not run."""
        return self.status == "fail"


# =============================================================================
# CODE POLICY
# =============================================================================

# Severity: critical → block, warning → log
_SEVERITY_CRITICAL = "critical"
_SEVERITY_WARNING = "warning"

_DYNAMIC_CODE_CALLS = frozenset({"eval", "exec", "compile", "__import__"})
_INTROSPECTION_CALLS = frozenset({"globals", "vars", "locals"})
_ATTRIBUTE_FUNCS = frozenset({"getattr", "setattr", "delattr", "hasattr"})


class _PolicyVisitor(ast.NodeVisitor):
    def __init__(self, granted: FrozenSet[Capability]) -> None:
        self.granted = granted
        self.critical: List[str] = []
        self.warning: List[str] = []

    def _check_module(self, name: str, lineno: int) -> None:
        allowed, capability = module_capability(name, self.granted)
        if allowed:
            return
        if capability is None:
            self.critical.append(f"line {lineno}: import of '{name}' is not allowed")
        else:
            self.critical.append(f"line {lineno}: import of '{name}' requires '{capability.value}' capability")

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._check_module(alias.name, node.lineno)
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level:
            self.critical.append(f"line {node.lineno}: relative import is not allowed")
        elif node.module:
            self._check_module(node.module, node.lineno)
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if is_blocked_attribute(node.attr):
            self.critical.append(f"line {node.lineno}: access to attribute '{node.attr}'")
        self.generic_visit(node)

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Name):
            name = node.func.id
            if name in _DYNAMIC_CODE_CALLS:
                self.critical.append(f"line {node.lineno}: call to {name}()")
            elif name in _INTROSPECTION_CALLS:
                self.warning.append(f"line {node.lineno}: call to {name}()")
            elif name in _ATTRIBUTE_FUNCS and len(node.args) >= 2:
                attr = node.args[1]
                if isinstance(attr, ast.Constant) and isinstance(attr.value, str):
                    if is_blocked_attribute(attr.value):
                        self.critical.append(f"line {node.lineno}: {name}() with attribute '{attr.value}'")
                elif name != "hasattr":
                    # checked again at run time by the attribute guard
                    self.warning.append(f"line {node.lineno}: {name}() with a computed attribute name")
        self.generic_visit(node)


def code_policy_guardrail(code: str, capabilities: Iterable[Capability] = ()) -> GuardrailResult:
    """
    Check a snippet against the capability policy without running it.

    Critical findings (denied imports, dynamic code execution, dunder and frame
    introspection) block the execution; warnings are reported but allowed.
    Code that does not parse passes: compiling it in the sandbox reports the
    SyntaxError with its real location.
    """
    granted = frozenset(capabilities)
    try:
        tree = ast.parse(code, filename="<sandbox>", mode="exec")
    except (SyntaxError, ValueError):
        return GuardrailResult(status="pass", message="Code does not parse; deferred to sandbox.")

    visitor = _PolicyVisitor(granted)
    visitor.visit(tree)

    if visitor.critical:
        return GuardrailResult(
            status="fail",
            message=f"Code policy violation (critical): {'; '.join(visitor.critical)}",
            details={_SEVERITY_CRITICAL: visitor.critical, _SEVERITY_WARNING: visitor.warning},
        )
    if visitor.warning:
        return GuardrailResult(
            status="warn",
            message=f"Code policy warnings: {'; '.join(visitor.warning)}",
            details={_SEVERITY_WARNING: visitor.warning},
        )
    return GuardrailResult(status="pass", message="No policy violations detected.")
