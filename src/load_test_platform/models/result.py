from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class BatchResult:
    """一次 Load Generator 调用（同一目标）的聚合结果"""

    target: str
    concurrency: int
    requests_per_actor: int

    total_requests: int
    successful_requests: int
    failed_requests: int

    avg_latency_ms: float
    max_latency_ms: float
    min_latency_ms: float

    # 耗时接近 0 时无法计算吞吐，记为 None
    requests_per_second: Optional[float]
    error_rate_percent: float
    elapsed_ms: float

    status_codes: Dict[str, int] = field(default_factory=dict)

    # 升序排列，供百分位计算
    latencies: Tuple[float, ...] = field(default=(), repr=False)

    # 编排器给的标签，如 "baseline" / "spike" / endpoint path
    label: Optional[str] = None

    kind: ClassVar[str] = "batch"

    @property
    def success_rate_percent(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return 100.0 * self.successful_requests / self.total_requests

    def to_dict(self, include_latencies: bool = False) -> Dict[str, Any]:
        data = {
            "kind": self.kind,
            "target": self.target,
            "label": self.label,
            "concurrency": self.concurrency,
            "requests_per_actor": self.requests_per_actor,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "avg_latency_ms": self.avg_latency_ms,
            "max_latency_ms": self.max_latency_ms,
            "min_latency_ms": self.min_latency_ms,
            "requests_per_second": self.requests_per_second,
            "error_rate_percent": self.error_rate_percent,
            "success_rate_percent": self.success_rate_percent,
            "elapsed_ms": self.elapsed_ms,
            "status_codes": dict(self.status_codes),
        }
        if include_latencies:
            data["latencies"] = list(self.latencies)
        return data


@dataclass(frozen=True)
class HttpResult(BatchResult):
    """HTTP 目标的批次结果"""

    method: str = "GET"

    kind: ClassVar[str] = "http"

    def to_dict(self, include_latencies: bool = False) -> Dict[str, Any]:
        data = super().to_dict(include_latencies)
        data["method"] = self.method
        return data


@dataclass(frozen=True)
class DbResult(BatchResult):
    """数据库查询的批次结果"""

    query: str = ""

    kind: ClassVar[str] = "db"

    @property
    def avg_query_time_ms(self) -> float:
        return self.avg_latency_ms

    def to_dict(self, include_latencies: bool = False) -> Dict[str, Any]:
        data = super().to_dict(include_latencies)
        data["query"] = self.query
        return data


Result = Union[HttpResult, DbResult]
