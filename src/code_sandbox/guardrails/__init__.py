"""
Code Sandbox Guardrails Module

Capability policy enforced inside the sandbox, and the static checks run on
submitted code before it reaches the sandbox.
"""

from code_sandbox.guardrails.capabilities import (
    CapabilityDenied,
    build_globals,
    make_audit_hook,
    make_import_guard,
    module_capability,
)
from code_sandbox.guardrails.security import GuardrailResult, code_policy_guardrail

__all__ = [
    "CapabilityDenied",
    "GuardrailResult",
    "build_globals",
    "code_policy_guardrail",
    "make_audit_hook",
    "make_import_guard",
    "module_capability",
]
