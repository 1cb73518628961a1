"""Pytest configuration for the console test suite.

Sets the test environment before any settings are loaded, so production
startup checks are exercised the way they run in production.
"""

import os


def pytest_configure(config):
    """Configure test environment before any tests run.

    ENVIRONMENT=test (not development) keeps tests from relying on
    development-only permissiveness. Tests never read a developer's .env
    because every Settings instance in the suite passes ``_env_file=None``.
    """
    config.addinivalue_line("markers", "security: Security-related tests (required gate)")
    config.addinivalue_line("markers", "slow: Slow-running tests (excluded from fast)")
    config.addinivalue_line("markers", "integration: Integration tests requiring a PostgreSQL server")

    os.environ.setdefault("ENVIRONMENT", "test")
