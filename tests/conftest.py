"""Pytest configuration and shared fixtures."""

import pytest

from code_sandbox.config.settings import LoggingSettings, SandboxSettings, Settings
from code_sandbox.execution.coordinator import ExecutionCoordinator


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: tests that start several sandbox processes concurrently")


@pytest.fixture
def sandbox_settings() -> SandboxSettings:
    """Sandbox settings tuned for tests: short poll interval, generous ceilings."""
    return SandboxSettings(
        default_timeout_ms=5000,
        max_timeout_ms=30000,
        poll_interval_ms=10,
        max_concurrent_executions=4,
    )


@pytest.fixture
def settings(sandbox_settings: SandboxSettings) -> Settings:
    return Settings(sandbox=sandbox_settings, logging=LoggingSettings(log_format="console"))


@pytest.fixture
def coordinator(settings: Settings) -> ExecutionCoordinator:
    return ExecutionCoordinator(settings=settings)
