"""Shared fixtures: a scripted executor, a fake clock and small configs."""

import time

import pytest

from load_test_platform.models.outcome import RequestOutcome
from load_test_platform.models.result import DbResult, HttpResult
from load_test_platform.scenarios.loader import load_config
from load_test_platform.scenarios.model import (
    EndpointConfig,
    EnvironmentConfig,
    LoadTestConfig,
    ScenarioConfig,
)


class FakeExecutor:
    """Returns canned outcomes without touching the network.

    ``latency_fn(call_number, target)`` decides the latency of each call;
    ``fail_every=n`` marks every n-th call as a 500; ``raise_for`` makes any
    target whose identifier contains that text raise instead of returning.
    """

    def __init__(self, latency_ms=10.0, latency_fn=None, fail_every=0, raise_for=None):
        self.latency_ms = latency_ms
        self.latency_fn = latency_fn
        self.fail_every = fail_every
        self.raise_for = raise_for
        self.connection_manager = None
        self.calls = []

    async def execute(self, target):
        self.calls.append(target)
        n = len(self.calls)
        if self.raise_for and self.raise_for in target.identifier:
            raise RuntimeError(f"unexpected failure for {target.identifier}")

        latency = self.latency_fn(n, target) if self.latency_fn else self.latency_ms
        success = not (self.fail_every and n % self.fail_every == 0)
        return RequestOutcome(
            timestamp=time.time(),
            latency_ms=latency,
            success=success,
            status_or_error_code="200" if success else "500",
        )


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def make_http_result(**overrides):
    values = dict(
        target="http://test/api/health",
        concurrency=1,
        requests_per_actor=1,
        total_requests=10,
        successful_requests=10,
        failed_requests=0,
        avg_latency_ms=100.0,
        max_latency_ms=120.0,
        min_latency_ms=80.0,
        requests_per_second=100.0,
        error_rate_percent=0.0,
        elapsed_ms=100.0,
    )
    values.update(overrides)
    return HttpResult(**values)


def make_db_result(**overrides):
    values = dict(
        target="active_users",
        concurrency=1,
        requests_per_actor=10,
        total_requests=10,
        successful_requests=10,
        failed_requests=0,
        avg_latency_ms=20.0,
        max_latency_ms=30.0,
        min_latency_ms=10.0,
        requests_per_second=50.0,
        error_rate_percent=0.0,
        elapsed_ms=200.0,
        query="SELECT 1",
    )
    values.update(overrides)
    return DbResult(**values)


def small_config(**scenarios):
    """A config with one environment ``test`` at http://test and the given scenarios."""
    config = LoadTestConfig(
        environments={"test": EnvironmentConfig(name="test", base_url="http://test")},
        scenarios={
            "spikeTest": ScenarioConfig(
                name="spikeTest",
                pattern="spike",
                base_users=10,
                spike_users=200,
                endpoints=[EndpointConfig(path="/api/health")],
            ),
            "enduranceTest": ScenarioConfig(
                name="enduranceTest",
                pattern="endurance",
                concurrent_users=5,
                duration_seconds=60,
                endpoints=[EndpointConfig(path="/api/health")],
            ),
        },
    )
    config.scenarios.update(scenarios)
    return config


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def default_config():
    return load_config()
