import asyncio
import sys
import time
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple

import click

from load_test_platform.config.logger import logger, setup_logging
from load_test_platform.config.settings import settings
from load_test_platform.core.executor import RequestExecutor
from load_test_platform.core.orchestrator import ScenarioOrchestrator
from load_test_platform.core.report_builder import ReportBuilder
from load_test_platform.errors import ConfigurationError
from load_test_platform.http_client.client import LoadHTTPClient
from load_test_platform.models.report import Report
from load_test_platform.models.scenario_run import ScenarioOutcome, SuiteResult
from load_test_platform.monitor.system_monitor import SystemMonitor
from load_test_platform.scenarios.loader import load_config
from load_test_platform.scenarios.model import LoadTestConfig
from load_test_platform.storage.database import ConnectionManager
from load_test_platform.storage.json_writer import JSONResultWriter

SuiteRunner = Callable[[ScenarioOrchestrator], Awaitable[SuiteResult]]


def _single(runner: Callable[[ScenarioOrchestrator], Awaitable[ScenarioOutcome]]) -> SuiteRunner:
    """把单场景执行器包装成 SuiteResult"""

    async def _run(orchestrator: ScenarioOrchestrator) -> SuiteResult:
        outcome = await runner(orchestrator)
        return SuiteResult(outcomes=(outcome,), warnings=tuple(orchestrator.warnings))

    return _run


async def _execute(
    config: LoadTestConfig,
    environment: str,
    runner: SuiteRunner,
    test_suite: str,
    output_dir: Optional[str],
    prefix: Optional[str] = None,
) -> Tuple[Report, Optional[Path]]:
    """跑一次编排，生成报告并写入 JSON"""
    connection_manager = ConnectionManager() if settings.DATABASE_URL else None
    writer = JSONResultWriter(output_dir)
    monitor = SystemMonitor()
    monitor.start()
    started = time.monotonic()

    try:
        async with LoadHTTPClient() as http_client:
            executor = RequestExecutor(http_client, connection_manager)
            orchestrator = ScenarioOrchestrator(config, executor, environment=environment, result_writer=writer)
            suite = await runner(orchestrator)
    finally:
        monitor.stop()
        if connection_manager is not None:
            await connection_manager.close()

    total_ms = (time.monotonic() - started) * 1000
    report = ReportBuilder(monitor).build(
        suite.runs,
        orchestrator.environment,
        total_time_ms=total_ms,
        test_suite=test_suite,
        warnings=suite.warnings,
    )
    path = await writer.write_report(report, prefix)
    return report, path


def _print_summary(report: Report, path: Optional[Path]) -> None:
    summary = report.summary
    click.echo("=" * 60)
    click.echo(f"Environment:    {report.metadata.environment}")
    click.echo(f"Scenarios:      {', '.join(run.name for run in report.scenarios) or '-'}")
    click.echo(f"Total requests: {summary.total_requests}")
    click.echo(f"Avg latency:    {summary.avg_latency_ms:.2f}ms")
    click.echo(f"Error rate:     {summary.error_rate_percent:.2f}%")
    click.echo(f"p95 / p99:      {report.percentiles.p95:.2f}ms / {report.percentiles.p99:.2f}ms")
    click.echo(f"Grade:          {report.grade.grade} ({report.grade.score}/100)")
    click.echo(f"Readiness:      {report.readiness.recommendation}")
    for rec in report.recommendations:
        click.echo(f"[{rec.priority}] {rec.category}: {rec.message} -> {rec.action}")
    for warning in report.warnings:
        click.echo(f"Warning: {warning}", err=True)
    if path:
        click.echo(f"Report saved:   {path}")


def _run_command(ctx: click.Context, environment: Optional[str], runner: SuiteRunner, test_suite: str, prefix=None):
    config: LoadTestConfig = ctx.obj["config"]
    environment = environment or settings.DEFAULT_ENVIRONMENT
    try:
        # 环境名在发起任何请求之前校验
        config.environment(environment)
        report, path = asyncio.run(
            _execute(config, environment, runner, test_suite, ctx.obj["output_dir"], prefix)
        )
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    _print_summary(report, path)


env_option = click.option(
    "--env",
    "environment",
    default=None,
    help="Target environment (development / staging / production). Defaults to DEFAULT_ENVIRONMENT.",
)


@click.group()
@click.option(
    "--config",
    "config_path",
    default=None,
    type=click.Path(exists=True),
    help="Optional YAML file merged over the bundled load test configuration.",
)
@click.option("--output-dir", default=None, type=click.Path(), help="Directory for JSON reports.")
@click.option("--log-level", default=None, help="Log level (DEBUG / INFO / WARNING).")
@click.pass_context
def main(ctx, config_path, output_dir, log_level):
    """Load testing harness -- fixed, spike, endurance, continuous and stress runs."""
    setup_logging(level=log_level)
    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config(override_path=config_path)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    ctx.obj["output_dir"] = output_dir


@main.command("list")
@click.pass_context
def list_cmd(ctx):
    """List configured scenarios and environments."""
    config: LoadTestConfig = ctx.obj["config"]
    click.echo("Scenarios:")
    for name, scenario in config.scenarios.items():
        kind = scenario.pattern or "fixed"
        click.echo(f"  {name:<16} {kind:<10} {scenario.title}")
    click.echo("Environments:")
    for name, env in config.environments.items():
        click.echo(f"  {name:<16} {env.base_url}")


@main.command()
@click.argument("name")
@env_option
@click.pass_context
def scenario(ctx, name, environment):
    """Run one named scenario."""
    config: LoadTestConfig = ctx.obj["config"]
    try:
        config.scenario(name)
    except ConfigurationError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.info("Running scenario", scenario=name, environment=environment)
    _run_command(
        ctx,
        environment,
        _single(lambda o: o.run_scenario(name)),
        test_suite=f"Scenario: {name}",
        prefix=f"scenario-{name}",
    )


@main.command()
@env_option
@click.option("--endurance-minutes", default=None, type=float, help="Length of the shortened endurance run.")
@click.pass_context
def comprehensive(ctx, environment, endurance_minutes):
    """Run the comprehensive suite (light, moderate, heavy, spike, endurance)."""

    async def _run(orchestrator: ScenarioOrchestrator) -> SuiteResult:
        return await orchestrator.run_comprehensive(endurance_minutes=endurance_minutes)

    _run_command(ctx, environment, _run, test_suite="Comprehensive Load Test Suite")


@main.command()
@env_option
@click.pass_context
def spike(ctx, environment):
    """Run the spike test (baseline, spike, recovery)."""
    _run_command(ctx, environment, _single(lambda o: o.run_spike()), test_suite="Spike Test", prefix="spike-test")


@main.command()
@env_option
@click.option("--minutes", default=None, type=float, help="Duration in minutes (default from config).")
@click.pass_context
def endurance(ctx, environment, minutes):
    """Run the endurance test and compute a stability score."""
    _run_command(
        ctx,
        environment,
        _single(lambda o: o.run_endurance(minutes=minutes)),
        test_suite="Endurance Test",
        prefix="endurance-test",
    )


@main.command()
@env_option
@click.option("--minutes", default=None, type=float, help="Monitoring window in minutes (default from config).")
@click.pass_context
def continuous(ctx, environment, minutes):
    """Probe the target periodically and classify the latency trend."""
    _run_command(
        ctx,
        environment,
        _single(lambda o: o.run_continuous(minutes=minutes)),
        test_suite="Continuous Monitoring",
        prefix="continuous-monitoring",
    )


@main.command()
@env_option
@click.option("--endpoint", default=None, help="Endpoint path to ramp against.")
@click.option("--start-users", default=None, type=int)
@click.option("--max-users", default=None, type=int)
@click.option("--step", default=None, type=int)
@click.pass_context
def stress(ctx, environment, endpoint, start_users, max_users, step):
    """Ramp concurrency until the breaking point."""
    _run_command(
        ctx,
        environment,
        _single(lambda o: o.run_stress(
            endpoint=endpoint, start_users=start_users, max_users=max_users, step=step,
        )),
        test_suite="Stress Test",
        prefix="stress-test",
    )


@main.command()
@env_option
@click.option("--connections", default=None, type=int, help="Concurrent connections to open.")
@click.pass_context
def pool(ctx, environment, connections):
    """Exercise the database connection pool with lightweight probes."""
    _run_command(
        ctx,
        environment,
        _single(lambda o: o.run_pool_test(connections=connections)),
        test_suite="Connection Pool Test",
        prefix="connection-pool",
    )


if __name__ == "__main__":
    main()
