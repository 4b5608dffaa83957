"""
code_sandbox: Run untrusted Python snippets in isolation and capture their output.

This package provides the output capture sink, the capability-restricted
execution sandbox, the coordinator that turns every run into a typed result,
plus settings, logging, guardrails, and a CrewAI tool adapter.
"""
