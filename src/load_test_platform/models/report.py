from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from load_test_platform.models.scenario_run import ScenarioRun


@dataclass(frozen=True)
class Summary:
    """多个 Result 合并后的汇总（延迟 / 错误率按 Result 取算术平均）"""

    result_count: int = 0
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    avg_latency_ms: float = 0.0
    max_latency_ms: float = 0.0
    min_latency_ms: float = 0.0
    requests_per_second: Optional[float] = None
    error_rate_percent: float = 0.0


@dataclass(frozen=True)
class DatabaseSummary:
    query_tests: int = 0
    concurrent_tests: int = 0
    average_query_time_ms: float = 0.0
    concurrent_throughput: float = 0.0


@dataclass(frozen=True)
class PercentileBreakdown:
    p50: float = 0.0
    p90: float = 0.0
    p95: float = 0.0
    p99: float = 0.0


@dataclass(frozen=True)
class Grade:
    grade: str
    score: int


@dataclass(frozen=True)
class Readiness:
    ready: bool
    criteria: Dict[str, bool]
    recommendation: str


@dataclass(frozen=True)
class Recommendation:
    category: str
    priority: str
    message: str
    action: str
    target: Optional[str] = None


@dataclass(frozen=True)
class Compliance:
    response_time: bool
    error_rate: bool
    throughput: bool

    @property
    def overall(self) -> bool:
        return self.response_time and self.error_rate and self.throughput


@dataclass(frozen=True)
class ReportMetadata:
    environment: str
    timestamp: datetime
    total_test_time_ms: float
    test_suite: str


@dataclass(frozen=True)
class Report:
    """顶层报告，构建后不再修改"""

    metadata: ReportMetadata
    summary: Summary
    web_summary: Summary
    database: DatabaseSummary
    percentiles: PercentileBreakdown
    grade: Grade
    readiness: Readiness
    recommendations: Tuple[Recommendation, ...] = ()
    compliance: Optional[Compliance] = None
    scenarios: Tuple[ScenarioRun, ...] = ()
    warnings: Tuple[str, ...] = ()
    system: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        compliance = None
        if self.compliance is not None:
            compliance = asdict(self.compliance)
            compliance["overall"] = self.compliance.overall

        return {
            "metadata": {
                "environment": self.metadata.environment,
                "timestamp": self.metadata.timestamp.isoformat(),
                "total_test_time_ms": self.metadata.total_test_time_ms,
                "test_suite": self.metadata.test_suite,
            },
            "summary": {
                "overall": asdict(self.summary),
                "web_application": asdict(self.web_summary),
                "database": asdict(self.database),
                "overall_grade": asdict(self.grade),
                "readiness": asdict(self.readiness),
            },
            "performance": {
                "percentiles": asdict(self.percentiles),
                "throughput": self.summary.requests_per_second,
                "average_response_time_ms": self.summary.avg_latency_ms,
                "system": self.system,
            },
            "scenarios": [run.to_dict() for run in self.scenarios],
            "recommendations": [asdict(r) for r in self.recommendations],
            "compliance": compliance,
            "warnings": list(self.warnings),
        }
