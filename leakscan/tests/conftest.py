"""Pytest configuration."""

import os
import pytest


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: mark test as requiring a live database (skipped in CI by default)"
    )


# Tests never talk to a real database or broker
os.environ.setdefault("DATABASE_URL", "postgresql://localhost:5432/leakscan?user=postgres&password=postgres")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.pop("LICHESS_TOKEN", None)
