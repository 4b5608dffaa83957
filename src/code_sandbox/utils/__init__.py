"""Shared utilities and helpers for the code_sandbox package."""

from code_sandbox.utils.logging import configure_logging

__all__ = ["configure_logging"]
