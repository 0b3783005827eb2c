import asyncio
import math
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence

from load_test_platform.config.logger import logger
from load_test_platform.config.settings import settings
from load_test_platform.core.executor import RequestExecutor
from load_test_platform.core.load_generator import LoadGenerator
from load_test_platform.core.state_machine import (
    SPIKE_TRANSITIONS,
    RunState,
    SpikePhase,
    StateMachine,
)
from load_test_platform.errors import ConfigurationError, DatabaseUnavailableError
from load_test_platform.models.outcome import HttpTarget, QueryTarget
from load_test_platform.models.result import Result
from load_test_platform.models.scenario_run import (
    OutcomeStatus,
    RunAccumulator,
    RunKind,
    ScenarioOutcome,
    StabilityTrend,
    SuiteResult,
)
from load_test_platform.scenarios.model import (
    EndpointConfig,
    LoadTestConfig,
    QueryConfig,
    ScenarioConfig,
    StressConfig,
)
from load_test_platform.storage.database import ConnectionManager
from load_test_platform.storage.json_writer import JSONResultWriter


# 突刺测试各阶段参数：(每个 actor 的请求数, 请求间隔 ms)
BASELINE_REQUESTS, BASELINE_DELAY_MS = 5, 100
SPIKE_REQUESTS, SPIKE_DELAY_MS = 3, 10
SPIKE_MAX_ERROR_RATE = 5.0
SPIKE_MAX_DEGRADATION = 3.0

STABLE_SCORE = 80
TREND_BAND = 0.1

DEFAULT_ENDPOINT = "/api/health"


@dataclass(frozen=True)
class SpikeEvaluation:
    multiplier: float
    degradation_ratio: float
    recovery_ratio: float
    passed: bool


def evaluate_spike(
    baseline: Result,
    spike: Result,
    recovery: Optional[Result],
    base_users: int,
    spike_users: int,
) -> SpikeEvaluation:
    """突刺判定：突刺阶段错误率 < 5% 且平均延迟 < 3 倍基线"""
    base_avg = baseline.avg_latency_ms

    degradation = spike.avg_latency_ms / base_avg if base_avg > 0 else 0.0
    recovery_ratio = 0.0
    if recovery is not None and base_avg > 0:
        recovery_ratio = recovery.avg_latency_ms / base_avg

    if base_avg > 0:
        fast_enough = spike.avg_latency_ms < base_avg * SPIKE_MAX_DEGRADATION
    else:
        fast_enough = spike.avg_latency_ms == 0

    return SpikeEvaluation(
        multiplier=spike_users / base_users,
        degradation_ratio=degradation,
        recovery_ratio=recovery_ratio,
        passed=spike.error_rate_percent < SPIKE_MAX_ERROR_RATE and fast_enough,
    )


def calculate_stability_score(result: Result) -> float:
    """稳定性得分，从 100 开始扣分，最低 0"""
    score = 100

    if result.error_rate_percent > 1:
        score -= 20
    elif result.error_rate_percent > 0.1:
        score -= 10

    if result.avg_latency_ms > 1000:
        score -= 30
    elif result.avg_latency_ms > 500:
        score -= 15
    elif result.avg_latency_ms > 200:
        score -= 5

    variance = result.max_latency_ms - result.min_latency_ms
    if variance > 3000:
        score -= 20
    elif variance > 1000:
        score -= 10

    return max(0, score)


def analyze_stability_trend(samples: Sequence[float]) -> StabilityTrend:
    """比较前半段和后半段样本的平均延迟"""
    if len(samples) < 2:
        return StabilityTrend.STABLE

    half = len(samples) // 2
    first = samples[:half]
    second = samples[half:]
    first_avg = sum(first) / len(first)
    second_avg = sum(second) / len(second)
    if first_avg <= 0:
        return StabilityTrend.STABLE

    change = (second_avg - first_avg) / first_avg
    if abs(change) < TREND_BAND:
        return StabilityTrend.STABLE
    if change > 0:
        return StabilityTrend.DEGRADING
    return StabilityTrend.IMPROVING


def is_breaking_point(result: Result, stress: StressConfig) -> bool:
    return (
        result.error_rate_percent > stress.error_rate_limit
        or result.avg_latency_ms > stress.latency_limit_ms
    )


def weighted_mix(queries: Sequence[QueryConfig]) -> List[QueryTarget]:
    """按 weight 展开成轮询列表"""
    mix: List[QueryTarget] = []
    for q in queries:
        target = QueryTarget(name=q.name, sql=q.sql, params=dict(q.params))
        mix.extend([target] * max(1, int(q.weight)))
    return mix


class ScenarioOrchestrator:
    """场景编排器 - 把 Load Generator 调用串成各类压测模式

    每个阶段都等上一个阶段的批次全部返回后才开始。
    场景级别的异常在边界上被捕获，转成 FAILED 结果和一条 warning；
    配置错误（未知场景 / 环境）直接抛出。
    """

    def __init__(
        self,
        config: LoadTestConfig,
        executor: RequestExecutor,
        environment: Optional[str] = None,
        connection_manager: Optional[ConnectionManager] = None,
        base_url: Optional[str] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        recovery_pause_seconds: Optional[float] = None,
        spike_recovery_seconds: Optional[float] = None,
        monitor_interval_seconds: Optional[float] = None,
        result_writer: Optional[JSONResultWriter] = None,
    ):
        self.config = config
        self.executor = executor
        self.environment = config.environment(environment or settings.DEFAULT_ENVIRONMENT)
        self.base_url = (base_url or settings.BASE_URL or self.environment.base_url).rstrip("/")
        self.connection_manager = connection_manager or executor.connection_manager

        self._sleep = sleep
        self._clock = clock
        self.generator = LoadGenerator(executor, sleep=sleep)

        self.recovery_pause_seconds = (
            recovery_pause_seconds if recovery_pause_seconds is not None else settings.RECOVERY_PAUSE_SECONDS
        )
        self.spike_recovery_seconds = (
            spike_recovery_seconds if spike_recovery_seconds is not None else settings.SPIKE_RECOVERY_SECONDS
        )
        self.monitor_interval_seconds = (
            monitor_interval_seconds if monitor_interval_seconds is not None else config.monitoring.interval_seconds
        )

        # 综合测试中每个场景完成后立即落盘
        self.result_writer = result_writer

        self.warnings: List[str] = []
        self.state_machine = StateMachine(RunState.IDLE)
        self._db_error: Optional[str] = None

    # ------------------------------------------------------------------
    # helpers

    def _warn(self, message: str, **kwargs) -> None:
        self.warnings.append(message)
        logger.warning(message, environment=self.environment.name, **kwargs)

    def _http_target(self, endpoint: EndpointConfig) -> HttpTarget:
        return HttpTarget(url=f"{self.base_url}{endpoint.path}", method=endpoint.method.upper())

    def _http_targets(self, scenario: ScenarioConfig) -> List[HttpTarget]:
        endpoints = scenario.endpoints or [EndpointConfig(path=DEFAULT_ENDPOINT)]
        return [self._http_target(e) for e in endpoints]

    def _accumulator(self, name: str, kind: RunKind) -> RunAccumulator:
        return RunAccumulator(name, kind, self.environment.name)

    async def _guard(self, name: str, runner: Awaitable[ScenarioOutcome]) -> ScenarioOutcome:
        """场景边界：非配置类异常转成 FAILED"""
        try:
            outcome = await runner
        except ConfigurationError:
            raise
        except Exception as e:
            outcome = ScenarioOutcome.failed(name, f"{type(e).__name__}: {e}")

        if outcome.status == OutcomeStatus.FAILED:
            self._warn(f"Scenario '{name}' failed: {outcome.reason}", scenario=name)
        elif outcome.status == OutcomeStatus.SKIPPED:
            self._warn(f"Scenario '{name}' skipped: {outcome.reason}", scenario=name)
        return outcome

    async def _save(self, outcome: ScenarioOutcome) -> None:
        if self.result_writer is not None and outcome.ok:
            await self.result_writer.write_run(outcome.run)

    async def _ensure_database(self) -> bool:
        """数据库是否可用；不可用的原因只记录一次"""
        if self.connection_manager is None:
            self._db_error = self._db_error or "no database configured (DATABASE_URL is not set)"
            return False
        if self.connection_manager.initialized:
            return True
        if self._db_error is not None:
            return False

        try:
            await self.connection_manager.initialize()
        except DatabaseUnavailableError as e:
            self._db_error = str(e)
            return False
        return True

    # ------------------------------------------------------------------
    # fixed scenario

    async def run_scenario(self, name: str) -> ScenarioOutcome:
        """按名字运行一个场景；spike / endurance 类场景转给对应的执行器"""
        scenario = self.config.scenario(name)

        if scenario.pattern == "spike":
            return await self.run_spike(name)
        if scenario.pattern == "endurance":
            return await self.run_endurance(name=name)

        return await self._guard(name, self._run_fixed(scenario))

    async def _run_fixed(self, scenario: ScenarioConfig) -> ScenarioOutcome:
        logger.info(
            "Scenario started",
            scenario=scenario.name,
            users=scenario.concurrent_users,
            requests_per_user=scenario.requests_per_user,
            environment=self.environment.name,
        )
        acc = self._accumulator(scenario.name, RunKind.SCENARIO)

        for endpoint in scenario.endpoints:
            result = await self.generator.run(
                self._http_target(endpoint),
                concurrency=scenario.concurrent_users,
                requests_per_actor=scenario.requests_per_user,
                inter_request_delay_ms=scenario.delay_ms,
                label=endpoint.path,
            )
            acc.add(result)

        if scenario.database_queries:
            ran = await self._run_database_tests(scenario, acc)
            if not ran:
                if not scenario.endpoints:
                    return ScenarioOutcome.skipped(scenario.name, f"database unavailable: {self._db_error}")
                # Web 部分照常算完成
                reason = f"database tests skipped: {self._db_error}"
                self._warn(f"Scenario '{scenario.name}' {reason}", scenario=scenario.name)
                acc.note(reason)

        run = acc.seal()
        logger.info("Scenario completed", scenario=scenario.name, results=len(run.results))
        return ScenarioOutcome.completed(run)

    async def _run_database_tests(self, scenario: ScenarioConfig, acc: RunAccumulator) -> bool:
        """单条查询测试 + 混合并发测试；数据库不可用时返回 False"""
        if not await self._ensure_database():
            return False

        db = self.config.database
        for query in scenario.database_queries:
            target = QueryTarget(name=query.name, sql=query.sql, params=dict(query.params))
            acc.add(await self.generator.run(
                target,
                concurrency=1,
                requests_per_actor=db.query_runs,
                inter_request_delay_ms=db.query_delay_ms,
                label=query.name,
            ))

        users = min(scenario.concurrent_users, db.max_concurrent_users)
        duration_s = min(scenario.requests_per_user * 10, db.max_duration_seconds)
        per_actor = max(1, int(duration_s // db.seconds_per_query))
        acc.add(await self.generator.run(
            weighted_mix(scenario.database_queries),
            concurrency=users,
            requests_per_actor=per_actor,
            inter_request_delay_ms=db.concurrent_delay_ms,
            label="concurrent",
        ))
        return True

    async def run_pool_test(
        self,
        connections: Optional[int] = None,
        queries_per_connection: Optional[int] = None,
    ) -> ScenarioOutcome:
        """连接池测试：大量并发轻量查询，结束后记录池状态"""
        name = "connectionPool"

        async def _run() -> ScenarioOutcome:
            if not await self._ensure_database():
                return ScenarioOutcome.skipped(name, f"database unavailable: {self._db_error}")

            db = self.config.database
            acc = self._accumulator(name, RunKind.POOL)
            acc.add(await self.generator.run(
                QueryTarget(name="pool_probe", sql=db.pool_probe_sql),
                concurrency=connections or db.pool_connections,
                requests_per_actor=queries_per_connection or db.pool_queries_per_connection,
                label="pool",
            ))
            return ScenarioOutcome.completed(acc.seal(pool_stats=self.connection_manager.stats().to_dict()))

        return await self._guard(name, _run())

    # ------------------------------------------------------------------
    # spike

    async def run_spike(self, name: Optional[str] = None) -> ScenarioOutcome:
        scenario = self.config.scenario(name or self.config.spike_scenario)
        return await self._guard(scenario.name, self._run_spike(scenario))

    async def _run_spike(self, scenario: ScenarioConfig) -> ScenarioOutcome:
        base_users = scenario.base_users or scenario.concurrent_users
        spike_users = scenario.spike_users or base_users
        targets = self._http_targets(scenario)
        acc = self._accumulator(scenario.name, RunKind.SPIKE)
        phases = StateMachine(SpikePhase.BASELINE, SPIKE_TRANSITIONS)

        logger.info("Spike baseline", scenario=scenario.name, users=base_users)
        baseline = await self.generator.run(
            targets, base_users, BASELINE_REQUESTS, BASELINE_DELAY_MS, label="baseline"
        )
        acc.add(baseline)

        phases.transition(SpikePhase.SPIKE)
        logger.info("Spike load applied", scenario=scenario.name, users=spike_users)
        spike = await self.generator.run(
            targets, spike_users, SPIKE_REQUESTS, SPIKE_DELAY_MS, label="spike"
        )
        acc.add(spike)

        phases.transition(SpikePhase.COOL_DOWN)
        await self._sleep(self.spike_recovery_seconds)

        phases.transition(SpikePhase.RECOVERY)
        recovery = await self.generator.run(
            targets, base_users, BASELINE_REQUESTS, BASELINE_DELAY_MS, label="recovery"
        )
        acc.add(recovery)
        phases.transition(SpikePhase.DONE)

        evaluation = evaluate_spike(baseline, spike, recovery, base_users, spike_users)
        logger.info(
            "Spike test evaluated",
            scenario=scenario.name,
            multiplier=evaluation.multiplier,
            degradation_ratio=round(evaluation.degradation_ratio, 2),
            passed=evaluation.passed,
        )
        run = acc.seal(
            spike_multiplier=evaluation.multiplier,
            degradation_ratio=evaluation.degradation_ratio,
            recovery_ratio=evaluation.recovery_ratio,
            passed=evaluation.passed,
        )
        return ScenarioOutcome.completed(run)

    # ------------------------------------------------------------------
    # endurance

    async def run_endurance(self, minutes: Optional[float] = None, name: Optional[str] = None) -> ScenarioOutcome:
        scenario = self.config.scenario(name or self.config.endurance_scenario)
        if minutes is not None:
            duration_s = minutes * 60
        else:
            duration_s = scenario.duration_seconds or 30 * 60
        if duration_s <= 0:
            raise ConfigurationError(f"Endurance duration must be positive, got {duration_s}s")
        return await self._guard(scenario.name, self._run_endurance(scenario, duration_s))

    async def _run_endurance(self, scenario: ScenarioConfig, duration_s: float) -> ScenarioOutcome:
        users = scenario.concurrent_users
        # 每个 actor 的请求均匀铺满整个时长
        requests_per_actor = max(1, math.ceil(duration_s / users))
        delay_ms = max(100.0, duration_s * 1000 / requests_per_actor)

        logger.info(
            "Endurance test started",
            scenario=scenario.name,
            users=users,
            duration_s=duration_s,
            requests_per_actor=requests_per_actor,
        )
        acc = self._accumulator(scenario.name, RunKind.ENDURANCE)
        result = await self.generator.run(
            self._http_targets(scenario),
            concurrency=users,
            requests_per_actor=requests_per_actor,
            inter_request_delay_ms=delay_ms,
            label="endurance",
        )
        acc.add(result)

        score = calculate_stability_score(result)
        logger.info("Endurance test completed", scenario=scenario.name, stability_score=score)
        return ScenarioOutcome.completed(acc.seal(stability_score=score, stable=score > STABLE_SCORE))

    # ------------------------------------------------------------------
    # continuous monitoring

    async def run_continuous(self, minutes: Optional[float] = None) -> ScenarioOutcome:
        name = "continuousMonitoring"
        return await self._guard(name, self._run_continuous(name, minutes))

    async def _run_continuous(self, name: str, minutes: Optional[float]) -> ScenarioOutcome:
        monitoring = self.config.monitoring
        duration_s = (minutes if minutes is not None else monitoring.duration_minutes) * 60
        target = self._http_target(EndpointConfig(path=monitoring.endpoint))
        acc = self._accumulator(name, RunKind.CONTINUOUS)
        samples: List[float] = []
        error_rates: List[float] = []

        deadline = self._clock() + duration_s
        while self._clock() < deadline:
            result = await self.generator.run(
                target,
                concurrency=monitoring.concurrent_users,
                requests_per_actor=monitoring.requests_per_user,
                inter_request_delay_ms=monitoring.delay_ms,
                label=f"sample-{len(samples) + 1}",
            )
            acc.add(result)
            samples.append(result.avg_latency_ms)
            error_rates.append(result.error_rate_percent)

            remaining = deadline - self._clock()
            if remaining <= 0:
                break
            await self._sleep(min(self.monitor_interval_seconds, remaining))

        trend = analyze_stability_trend(samples)
        if samples:
            acc.note(
                f"samples={len(samples)} avg_latency_ms={sum(samples) / len(samples):.2f} "
                f"avg_error_rate={sum(error_rates) / len(error_rates):.2f}"
            )
        logger.info("Continuous monitoring completed", samples=len(samples), trend=trend.value)
        return ScenarioOutcome.completed(acc.seal(stability_trend=trend))

    # ------------------------------------------------------------------
    # ramped stress

    async def run_stress(
        self,
        endpoint: Optional[str] = None,
        start_users: Optional[int] = None,
        max_users: Optional[int] = None,
        step: Optional[int] = None,
        requests_per_step: Optional[int] = None,
    ) -> ScenarioOutcome:
        stress = self.config.stress
        start_users = start_users or stress.start_users
        max_users = max_users or stress.max_users
        step = step or stress.step
        requests_per_step = requests_per_step or stress.requests_per_step
        if start_users <= 0 or step <= 0:
            raise ConfigurationError("Stress test needs positive start_users and step")

        name = "stressTest"
        target = self._http_target(EndpointConfig(path=endpoint or stress.endpoint))

        async def _run() -> ScenarioOutcome:
            acc = self._accumulator(name, RunKind.STRESS)
            breaking_point: Optional[int] = None
            max_stable: Optional[int] = None

            for users in range(start_users, max_users + 1, step):
                result = await self.generator.run(
                    target,
                    concurrency=users,
                    requests_per_actor=math.ceil(requests_per_step / users),
                    inter_request_delay_ms=stress.delay_ms,
                    label=f"{users} users",
                )
                acc.add(result)
                if is_breaking_point(result, stress):
                    breaking_point = users
                    logger.warning(
                        "Breaking point reached",
                        users=users,
                        error_rate=result.error_rate_percent,
                        avg_latency_ms=result.avg_latency_ms,
                    )
                    break
                max_stable = users

            return ScenarioOutcome.completed(
                acc.seal(breaking_point=breaking_point, max_stable_users=max_stable)
            )

        return await self._guard(name, _run())

    # ------------------------------------------------------------------
    # comprehensive suite

    async def run_comprehensive(self, endurance_minutes: Optional[float] = None) -> SuiteResult:
        """轻 → 中 → 重，之后一次突刺测试和一次缩短的耐久测试

        单个场景失败不影响后续场景，失败的场景不会出现在结果里。
        """
        self.state_machine = StateMachine(RunState.IDLE)
        self.state_machine.transition(RunState.RUNNING)
        outcomes: List[ScenarioOutcome] = []

        for name in self.config.comprehensive_sequence:
            outcome = await self.run_scenario(name)
            outcomes.append(outcome)
            await self._save(outcome)

            # 给被测系统留出恢复时间
            self.state_machine.transition(RunState.RECOVERING)
            logger.info("Waiting for system recovery", seconds=self.recovery_pause_seconds)
            await self._sleep(self.recovery_pause_seconds)
            self.state_machine.transition(RunState.RUNNING)

        spike = await self.run_spike()
        outcomes.append(spike)
        await self._save(spike)
        if spike.ok and spike.run.passed is False:
            self._warn(f"Spike test did not pass (degradation {spike.run.degradation_ratio:.2f}x)")

        minutes = endurance_minutes if endurance_minutes is not None else settings.COMPREHENSIVE_ENDURANCE_MINUTES
        endurance = await self.run_endurance(minutes=minutes)
        outcomes.append(endurance)
        await self._save(endurance)
        if endurance.ok and endurance.run.stable is False:
            self._warn(f"Endurance test unstable (score {endurance.run.stability_score})")

        self.state_machine.transition(RunState.COMPLETED)
        completed = sum(1 for o in outcomes if o.ok)
        logger.info("Comprehensive suite completed", scenarios=len(outcomes), completed=completed)
        return SuiteResult(outcomes=tuple(outcomes), warnings=tuple(self.warnings))
