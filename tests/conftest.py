"""
Shared pytest fixtures and configuration for Morpheus tests.
"""

import pytest

from morpheus import EngineSettings, MorpheusRegistry


class FakeClock:
    """Manually advanced clock for deterministic TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def registry():
    """Provide a fresh, isolated registry for tests that need one."""
    return MorpheusRegistry()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(clock):
    """Engine settings whose caches expire on the fake clock."""
    return EngineSettings(timer=clock)


@pytest.fixture
def calls():
    """Call log shared by spy morphs: list of (morph name, input)."""
    return []


@pytest.fixture
def spy(calls):
    """Wrap a function so that every invocation is logged in ``calls``."""

    def make(name, fn):
        def wrapper(value, context):
            calls.append((name, value))
            return fn(value, context)

        return wrapper

    return make
