"""Configuration for code_sandbox."""
