from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from load_test_platform.config.logger import logger
from load_test_platform.core.metrics import latency_percentiles, merge_results, pooled_latencies
from load_test_platform.models.report import (
    Compliance,
    DatabaseSummary,
    Grade,
    Readiness,
    Recommendation,
    Report,
    ReportMetadata,
    Summary,
)
from load_test_platform.models.result import DbResult, HttpResult, Result
from load_test_platform.models.scenario_run import ScenarioRun, StabilityTrend
from load_test_platform.monitor.system_monitor import SystemMonitor
from load_test_platform.scenarios.model import EnvironmentConfig, Thresholds

READY_MESSAGE = "System is ready for production deployment"
NOT_READY_MESSAGE = "System requires optimization before production deployment"


def calculate_grade(summary: Summary) -> Grade:
    """100 分制，按平均延迟和错误率扣分"""
    score = 100

    if summary.avg_latency_ms > 2000:
        score -= 30
    elif summary.avg_latency_ms > 1000:
        score -= 20
    elif summary.avg_latency_ms > 500:
        score -= 10

    if summary.error_rate_percent > 5:
        score -= 25
    elif summary.error_rate_percent > 1:
        score -= 15
    elif summary.error_rate_percent > 0.1:
        score -= 5

    if score >= 90:
        grade = "A"
    elif score >= 80:
        grade = "B"
    elif score >= 70:
        grade = "C"
    elif score >= 60:
        grade = "D"
    else:
        grade = "F"
    return Grade(grade=grade, score=score)


def assess_readiness(summary: Summary, runs: Sequence[ScenarioRun] = ()) -> Readiness:
    # 耐久测试不稳定或持续监控呈恶化趋势时，stability 判为不通过
    stability = not any(
        run.stable is False or run.stability_trend == StabilityTrend.DEGRADING
        for run in runs
    )
    criteria = {
        "response_time": summary.avg_latency_ms < 500,
        "error_rate": summary.error_rate_percent < 1,
        "stability": stability,
    }
    ready = all(criteria.values())
    return Readiness(
        ready=ready,
        criteria=criteria,
        recommendation=READY_MESSAGE if ready else NOT_READY_MESSAGE,
    )


def generate_recommendations(results: Iterable[Result]) -> List[Recommendation]:
    """每个超阈值的 Result 各出一条建议，不去重"""
    recommendations: List[Recommendation] = []

    for result in results:
        if isinstance(result, HttpResult):
            if result.avg_latency_ms > 1000:
                recommendations.append(Recommendation(
                    category="Performance",
                    priority="High",
                    message=f"Slow response times detected ({result.avg_latency_ms:.2f}ms)",
                    action="Optimize application performance and implement caching",
                    target=result.target,
                ))
            if result.error_rate_percent > 1:
                recommendations.append(Recommendation(
                    category="Reliability",
                    priority="High",
                    message=f"High error rate detected ({result.error_rate_percent:.2f}%)",
                    action="Investigate and fix failing endpoints",
                    target=result.target,
                ))
        elif isinstance(result, DbResult):
            if result.avg_query_time_ms > 500:
                recommendations.append(Recommendation(
                    category="Database",
                    priority="Medium",
                    message=f"Slow database queries detected ({result.avg_query_time_ms:.2f}ms)",
                    action="Optimize database queries and add appropriate indexes",
                    target=result.target,
                ))

    return recommendations


def check_compliance(summary: Summary, thresholds: Thresholds) -> Compliance:
    """按环境阈值判断是否达标"""
    rps = summary.requests_per_second
    return Compliance(
        response_time=summary.avg_latency_ms < thresholds.response_time.acceptable,
        error_rate=summary.error_rate_percent < thresholds.error_rate.acceptable,
        throughput=rps is not None and rps >= thresholds.throughput.low,
    )


def summarize_database(results: Iterable[DbResult]) -> DatabaseSummary:
    """单条查询测试（并发 1）和并发测试分开统计"""
    results = list(results)
    query_tests = [r for r in results if r.concurrency == 1]
    concurrent = [r for r in results if r.concurrency > 1]

    avg_query = 0.0
    if query_tests:
        avg_query = sum(r.avg_query_time_ms for r in query_tests) / len(query_tests)
    throughput = 0.0
    if concurrent:
        throughput = sum(r.requests_per_second or 0.0 for r in concurrent) / len(concurrent)

    return DatabaseSummary(
        query_tests=len(query_tests),
        concurrent_tests=len(concurrent),
        average_query_time_ms=avg_query,
        concurrent_throughput=throughput,
    )


class ReportBuilder:
    """把若干 sealed ScenarioRun 汇总成一份 Report"""

    def __init__(self, system_monitor: Optional[SystemMonitor] = None):
        self.system_monitor = system_monitor

    def build(
        self,
        runs: Sequence[ScenarioRun],
        environment: EnvironmentConfig,
        total_time_ms: float,
        test_suite: str = "Comprehensive Load Test Suite",
        warnings: Sequence[str] = (),
        timestamp: Optional[datetime] = None,
    ) -> Report:
        runs = list(runs)
        results: List[Result] = [r for run in runs for r in run.results]
        http_results = [r for r in results if isinstance(r, HttpResult)]
        db_results = [r for r in results if isinstance(r, DbResult)]

        summary = merge_results(results)
        web_summary = merge_results(http_results)
        # 评分和上线判定基于 Web 汇总；只有数据库结果时退回整体汇总
        graded = web_summary if http_results else summary

        system: Dict[str, Any] = {}
        if self.system_monitor is not None:
            system = self.system_monitor.summary()

        report = Report(
            metadata=ReportMetadata(
                environment=environment.name,
                timestamp=timestamp or datetime.now(timezone.utc),
                total_test_time_ms=total_time_ms,
                test_suite=test_suite,
            ),
            summary=summary,
            web_summary=web_summary,
            database=summarize_database(db_results),
            percentiles=latency_percentiles(pooled_latencies(results)),
            grade=calculate_grade(graded),
            readiness=assess_readiness(graded, runs),
            recommendations=tuple(generate_recommendations(results)),
            compliance=check_compliance(graded, environment.thresholds),
            scenarios=tuple(runs),
            warnings=tuple(warnings),
            system=system,
        )

        logger.info(
            "Report built",
            environment=environment.name,
            scenarios=len(runs),
            grade=report.grade.grade,
            score=report.grade.score,
            ready=report.readiness.ready,
        )
        return report
