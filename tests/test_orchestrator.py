"""Tests for the scenario orchestrator with a scripted executor and fake clock."""

import json

import pytest

from load_test_platform.core.executor import RequestExecutor
from load_test_platform.core.orchestrator import (
    ScenarioOrchestrator,
    analyze_stability_trend,
    calculate_stability_score,
    evaluate_spike,
    weighted_mix,
)
from load_test_platform.core.report_builder import ReportBuilder
from load_test_platform.core.state_machine import RunState
from load_test_platform.errors import UnknownEnvironmentError, UnknownScenarioError
from load_test_platform.http_client.client import LoadHTTPClient
from load_test_platform.models.result import DbResult
from load_test_platform.models.scenario_run import OutcomeStatus, RunKind, StabilityTrend
from load_test_platform.scenarios.model import (
    DatabaseTestConfig,
    EndpointConfig,
    QueryConfig,
    ScenarioConfig,
)
from load_test_platform.storage.database import ConnectionManager
from load_test_platform.storage.json_writer import JSONResultWriter

from conftest import FakeExecutor, make_http_result, small_config


def _orchestrator(config, executor, clock, **kwargs):
    return ScenarioOrchestrator(
        config,
        executor,
        environment="test",
        base_url="http://test",
        sleep=clock.sleep,
        clock=clock,
        **kwargs,
    )


def _fixed(name, *paths, users=2, requests=2, delay=0):
    return ScenarioConfig(
        name=name,
        concurrent_users=users,
        requests_per_user=requests,
        delay_ms=delay,
        endpoints=[EndpointConfig(path=p) for p in paths],
    )


class TestSpikeEvaluation:
    def test_four_times_slower_fails(self):
        baseline = make_http_result(avg_latency_ms=100.0)
        spike = make_http_result(avg_latency_ms=400.0, error_rate_percent=0.0)
        evaluation = evaluate_spike(baseline, spike, None, base_users=10, spike_users=200)

        assert evaluation.passed is False
        assert evaluation.degradation_ratio == pytest.approx(4.0)
        assert evaluation.multiplier == 200 / 10

    def test_within_limits_passes(self):
        baseline = make_http_result(avg_latency_ms=100.0)
        spike = make_http_result(avg_latency_ms=250.0, error_rate_percent=4.9)
        recovery = make_http_result(avg_latency_ms=110.0)
        evaluation = evaluate_spike(baseline, spike, recovery, base_users=10, spike_users=50)

        assert evaluation.passed is True
        assert evaluation.multiplier == 5.0
        assert evaluation.recovery_ratio == pytest.approx(1.1)

    def test_error_rate_fails(self):
        baseline = make_http_result(avg_latency_ms=100.0)
        spike = make_http_result(avg_latency_ms=100.0, error_rate_percent=5.0)
        assert evaluate_spike(baseline, spike, None, 10, 200).passed is False

    def test_zero_baseline(self):
        baseline = make_http_result(avg_latency_ms=0.0)
        spike = make_http_result(avg_latency_ms=5.0)
        evaluation = evaluate_spike(baseline, spike, None, 10, 200)
        assert evaluation.degradation_ratio == 0.0
        assert evaluation.passed is False


class TestStabilityScore:
    def test_healthy_batch_scores_100(self):
        result = make_http_result(error_rate_percent=0.0, avg_latency_ms=100.0, max_latency_ms=125.0, min_latency_ms=75.0)
        assert calculate_stability_score(result) == 100

    def test_unhealthy_batch_scores_at_most_30(self):
        result = make_http_result(error_rate_percent=2.0, avg_latency_ms=1500.0, max_latency_ms=4000.0, min_latency_ms=500.0)
        assert calculate_stability_score(result) <= 30

    @pytest.mark.parametrize(
        "error_rate, avg, spread, expected",
        [
            (0.5, 100.0, 0.0, 90),
            (0.0, 600.0, 0.0, 85),
            (0.0, 300.0, 0.0, 95),
            (0.0, 100.0, 1500.0, 90),
        ],
    )
    def test_individual_penalties(self, error_rate, avg, spread, expected):
        result = make_http_result(
            error_rate_percent=error_rate,
            avg_latency_ms=avg,
            min_latency_ms=10.0,
            max_latency_ms=10.0 + spread,
        )
        assert calculate_stability_score(result) == expected


class TestStabilityTrend:
    def test_classification(self):
        assert analyze_stability_trend([100, 102, 101, 99]) == StabilityTrend.STABLE
        assert analyze_stability_trend([100, 100, 150, 150]) == StabilityTrend.DEGRADING
        assert analyze_stability_trend([150, 150, 100, 100]) == StabilityTrend.IMPROVING

    def test_too_few_samples(self):
        assert analyze_stability_trend([]) == StabilityTrend.STABLE
        assert analyze_stability_trend([500]) == StabilityTrend.STABLE


class TestSpikeRun:
    @pytest.mark.asyncio
    async def test_spike_four_times_baseline_does_not_pass(self, fake_clock):
        # 基线 10x5=50 次，突刺 200x3=600 次，之后是恢复阶段
        def latency(n, target):
            return 40.0 if 50 < n <= 650 else 10.0

        executor = FakeExecutor(latency_fn=latency)
        orchestrator = _orchestrator(small_config(), executor, fake_clock, spike_recovery_seconds=10)

        outcome = await orchestrator.run_spike()

        assert outcome.status == OutcomeStatus.COMPLETED
        run = outcome.run
        assert run.kind == RunKind.SPIKE
        assert [r.label for r in run.results] == ["baseline", "spike", "recovery"]
        assert [r.total_requests for r in run.results] == [50, 600, 50]
        assert run.spike_multiplier == 20.0
        assert run.degradation_ratio == pytest.approx(4.0)
        assert run.recovery_ratio == pytest.approx(1.0)
        assert run.passed is False
        assert 10 in fake_clock.sleeps


class TestEnduranceRun:
    @pytest.mark.asyncio
    async def test_sized_to_duration(self, fake_clock):
        executor = FakeExecutor(latency_ms=20.0)
        orchestrator = _orchestrator(small_config(), executor, fake_clock)

        outcome = await orchestrator.run_endurance(minutes=1)

        run = outcome.run
        result = run.results[0]
        # 60 秒 / 5 个用户 -> 每个用户 12 次，间隔 5 秒
        assert result.concurrency == 5
        assert result.requests_per_actor == 12
        assert result.total_requests == 60
        assert max(fake_clock.sleeps) == pytest.approx(5.0)
        assert run.stability_score == 100
        assert run.stable is True


class TestContinuousRun:
    @pytest.mark.asyncio
    async def test_degrading_trend(self, fake_clock):
        def latency(n, target):
            return 100.0 if n <= 20 else 200.0

        config = small_config()
        # 探针内部不等待，时钟只随采样间隔前进
        config.monitoring.delay_ms = 0
        executor = FakeExecutor(latency_fn=latency)
        orchestrator = _orchestrator(config, executor, fake_clock, monitor_interval_seconds=120)

        outcome = await orchestrator.run_continuous(minutes=10)

        run = outcome.run
        assert run.kind == RunKind.CONTINUOUS
        # t = 0, 120, 240, 360, 480
        assert len(run.results) == 5
        assert all(r.total_requests == 10 for r in run.results)
        assert run.stability_trend == StabilityTrend.DEGRADING
        assert fake_clock.now == 600

    @pytest.mark.asyncio
    async def test_stable_trend(self, fake_clock):
        orchestrator = _orchestrator(small_config(), FakeExecutor(latency_ms=50.0), fake_clock)
        outcome = await orchestrator.run_continuous(minutes=6)
        assert outcome.run.stability_trend == StabilityTrend.STABLE
        assert len(outcome.run.results) >= 2


class TestStressRun:
    @pytest.mark.asyncio
    async def test_stops_at_breaking_point(self, fake_clock):
        # 5 用户 20 次、10 用户 20 次，之后延迟飙升
        def latency(n, target):
            return 100.0 if n <= 40 else 6000.0

        orchestrator = _orchestrator(small_config(), FakeExecutor(latency_fn=latency), fake_clock)
        outcome = await orchestrator.run_stress(start_users=5, max_users=50, step=5, requests_per_step=20)

        run = outcome.run
        assert [r.concurrency for r in run.results] == [5, 10, 15]
        assert [r.requests_per_actor for r in run.results] == [4, 2, 2]
        assert run.breaking_point == 15
        assert run.max_stable_users == 10

    @pytest.mark.asyncio
    async def test_no_breaking_point(self, fake_clock):
        orchestrator = _orchestrator(small_config(), FakeExecutor(latency_ms=10.0), fake_clock)
        outcome = await orchestrator.run_stress(start_users=5, max_users=20, step=5, requests_per_step=20)

        assert outcome.run.breaking_point is None
        assert outcome.run.max_stable_users == 20
        assert len(outcome.run.results) == 4


class TestFixedScenario:
    @pytest.mark.asyncio
    async def test_one_result_per_endpoint(self, fake_clock):
        config = small_config(light=_fixed("light", "/api/health", "/api/markets/price", users=3, requests=4, delay=100))
        executor = FakeExecutor()
        orchestrator = _orchestrator(config, executor, fake_clock)

        outcome = await orchestrator.run_scenario("light")

        assert outcome.ok
        run = outcome.run
        assert [r.target for r in run.results] == [
            "http://test/api/health",
            "http://test/api/markets/price",
        ]
        assert all(r.total_requests == 12 for r in run.results)
        assert orchestrator.warnings == []

    @pytest.mark.asyncio
    async def test_unknown_scenario_is_fatal(self, fake_clock):
        orchestrator = _orchestrator(small_config(), FakeExecutor(), fake_clock)
        with pytest.raises(UnknownScenarioError):
            await orchestrator.run_scenario("nope")

    def test_unknown_environment_is_fatal(self, fake_clock):
        with pytest.raises(UnknownEnvironmentError):
            ScenarioOrchestrator(small_config(), FakeExecutor(), environment="mars")

    @pytest.mark.asyncio
    async def test_dispatches_spike_pattern(self, fake_clock):
        orchestrator = _orchestrator(small_config(), FakeExecutor(), fake_clock)
        outcome = await orchestrator.run_scenario("spikeTest")
        assert outcome.run.kind == RunKind.SPIKE


class TestComprehensiveSuite:
    @pytest.mark.asyncio
    async def test_failed_scenario_is_skipped_not_fatal(self, fake_clock):
        config = small_config(
            s1=_fixed("s1", "/one"),
            s2=_fixed("s2", "/boom"),
            s3=_fixed("s3", "/three"),
        )
        config.comprehensive_sequence = ["s1", "s2", "s3"]
        executor = FakeExecutor(raise_for="/boom")
        orchestrator = _orchestrator(config, executor, fake_clock, recovery_pause_seconds=30)

        suite = await orchestrator.run_comprehensive(endurance_minutes=1)

        statuses = {o.name: o.status for o in suite.outcomes}
        assert statuses["s1"] == OutcomeStatus.COMPLETED
        assert statuses["s2"] == OutcomeStatus.FAILED
        assert statuses["s3"] == OutcomeStatus.COMPLETED
        assert [run.name for run in suite.runs] == ["s1", "s3", "spikeTest", "enduranceTest"]
        assert any("s2" in w for w in suite.warnings)
        assert fake_clock.sleeps.count(30) == 3
        assert orchestrator.state_machine.state == RunState.COMPLETED

        report = ReportBuilder().build(suite.runs, orchestrator.environment, total_time_ms=1.0, warnings=suite.warnings)
        names = [run.name for run in report.scenarios]
        assert "s1" in names and "s3" in names
        assert "s2" not in names
        assert any("s2" in w for w in report.warnings)

    @pytest.mark.asyncio
    async def test_each_completed_run_is_saved(self, fake_clock, tmp_path):
        config = small_config(s1=_fixed("s1", "/one"), s2=_fixed("s2", "/boom"))
        config.comprehensive_sequence = ["s1", "s2"]
        orchestrator = _orchestrator(
            config,
            FakeExecutor(raise_for="/boom"),
            fake_clock,
            result_writer=JSONResultWriter(str(tmp_path)),
        )

        await orchestrator.run_comprehensive(endurance_minutes=1)

        saved = sorted(p.name.rsplit("-", 1)[0] for p in tmp_path.glob("*.json"))
        assert saved == ["scenario-enduranceTest", "scenario-s1", "scenario-spikeTest"]
        data = json.loads(next(tmp_path.glob("scenario-s1-*.json")).read_text(encoding="utf-8"))
        assert data["results"][0]["success_rate_percent"] == 100.0


class TestDatabaseScenarios:
    @pytest.mark.asyncio
    async def test_unavailable_database_skips_db_only_scenario(self, fake_clock, tmp_path):
        bad = ConnectionManager(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}", pool_size=2)
        config = small_config(
            dbOnly=ScenarioConfig(name="dbOnly", database_queries=[QueryConfig(name="q", sql="SELECT 1")]),
        )
        orchestrator = _orchestrator(config, FakeExecutor(), fake_clock, connection_manager=bad)

        outcome = await orchestrator.run_scenario("dbOnly")

        assert outcome.status == OutcomeStatus.SKIPPED
        assert orchestrator.warnings

    @pytest.mark.asyncio
    async def test_bundled_database_scenario_skipped_without_url(
        self, default_config, fake_clock, tmp_path, monkeypatch
    ):
        monkeypatch.chdir(tmp_path)
        executor = RequestExecutor(http_client=LoadHTTPClient(), connection_manager=None)
        orchestrator = ScenarioOrchestrator(
            default_config, executor, environment="staging", sleep=fake_clock.sleep, clock=fake_clock,
        )

        outcome = await orchestrator.run_scenario("databaseLoad")

        assert outcome.status == OutcomeStatus.SKIPPED
        assert "DATABASE_URL is not set" in outcome.reason
        assert any("databaseLoad" in w for w in orchestrator.warnings)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unavailable_database_keeps_web_part(self, fake_clock, tmp_path):
        bad = ConnectionManager(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'x.db'}", pool_size=2)
        scenario = _fixed("mixed", "/api/health")
        scenario.database_queries = [QueryConfig(name="q", sql="SELECT 1")]
        orchestrator = _orchestrator(small_config(mixed=scenario), FakeExecutor(), fake_clock, connection_manager=bad)

        outcome = await orchestrator.run_scenario("mixed")

        assert outcome.status == OutcomeStatus.COMPLETED
        assert len(outcome.run.http_results) == 1
        assert outcome.run.db_results == []
        assert any("database tests skipped" in n for n in outcome.run.notes)
        assert any("database tests skipped" in w for w in orchestrator.warnings)

    @pytest.mark.asyncio
    async def test_query_and_concurrent_tests(self, fake_clock, tmp_path):
        manager = ConnectionManager(f"sqlite+aiosqlite:///{tmp_path / 'load.db'}", pool_size=5)
        executor = RequestExecutor(http_client=LoadHTTPClient(), connection_manager=manager)
        config = small_config(
            db=ScenarioConfig(
                name="db",
                concurrent_users=3,
                requests_per_user=1,
                database_queries=[
                    QueryConfig(name="one", sql="SELECT 1", weight=2),
                    QueryConfig(name="two", sql="SELECT 2"),
                ],
            ),
        )
        config.database = DatabaseTestConfig(query_runs=3, query_delay_ms=10)
        orchestrator = _orchestrator(config, executor, fake_clock)

        try:
            outcome = await orchestrator.run_scenario("db")
            pool_outcome = await orchestrator.run_pool_test(connections=8, queries_per_connection=2)
        finally:
            await manager.close()

        results = outcome.run.results
        assert all(isinstance(r, DbResult) for r in results)
        assert [r.label for r in results] == ["one", "two", "concurrent"]
        assert [r.total_requests for r in results[:2]] == [3, 3]
        # min(1 * 10, 60) 秒，每 2 秒一次 -> 每个用户 5 次
        assert results[2].concurrency == 3
        assert results[2].total_requests == 15
        assert all(r.error_rate_percent == 0 for r in results)

        pool_run = pool_outcome.run
        assert pool_run.kind == RunKind.POOL
        assert pool_run.results[0].total_requests == 16
        assert pool_run.results[0].failed_requests == 0
        assert pool_run.pool_stats["size"] == 5
        assert pool_run.pool_stats["active"] == 0

    def test_weighted_mix(self):
        mix = weighted_mix([QueryConfig(name="a", sql="SELECT 1", weight=3), QueryConfig(name="b", sql="SELECT 2")])
        assert [t.name for t in mix] == ["a", "a", "a", "b"]
