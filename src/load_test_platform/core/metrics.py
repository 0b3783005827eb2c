"""Pure reductions over request outcomes and batch results.

Nothing in this module keeps state between calls. Every function takes an
immutable input (outcomes or results) and returns a new value, so the same
input always aggregates to the same summary. Empty inputs reduce to zeros
instead of raising.
"""

import math
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence

from load_test_platform.models.outcome import QueryTarget, RequestOutcome, Target
from load_test_platform.models.report import PercentileBreakdown, Summary
from load_test_platform.models.result import DbResult, HttpResult, Result

# elapsed 小于这个值（ms）时不计算吞吐
MIN_ELAPSED_MS = 1e-3


def percentile(sorted_values: Sequence[float], p: float) -> float:
    """ceil(p/100*n)-1 取下标，并夹在 [0, n-1] 之间；空序列返回 0"""
    n = len(sorted_values)
    if n == 0:
        return 0.0
    index = math.ceil(p / 100.0 * n) - 1
    index = min(max(index, 0), n - 1)
    return float(sorted_values[index])


def latency_percentiles(latencies: Iterable[float]) -> PercentileBreakdown:
    values = sorted(latencies)
    return PercentileBreakdown(
        p50=percentile(values, 50),
        p90=percentile(values, 90),
        p95=percentile(values, 95),
        p99=percentile(values, 99),
    )


def status_distribution(outcomes: Iterable[RequestOutcome]) -> Dict[str, int]:
    return dict(Counter(o.status_or_error_code for o in outcomes))


def error_rate(failed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return 100.0 * failed / total


def throughput(total: int, elapsed_ms: float) -> Optional[float]:
    if total <= 0 or elapsed_ms < MIN_ELAPSED_MS:
        return None
    return total / (elapsed_ms / 1000.0)


def build_result(
    targets: Sequence[Target],
    outcomes: Sequence[RequestOutcome],
    concurrency: int,
    requests_per_actor: int,
    elapsed_ms: float,
    label: Optional[str] = None,
) -> Result:
    """把一个批次的 outcome 聚合成 HttpResult 或 DbResult

    类型由目标决定，在构造时确定，下游不再根据字段去猜。
    """
    if not targets:
        raise ValueError("build_result needs at least one target")

    first = targets[0]
    if len(targets) == 1:
        identifier = first.identifier
    else:
        identifier = label or ",".join(t.identifier for t in targets)

    latencies = tuple(sorted(o.latency_ms for o in outcomes))
    total = len(outcomes)
    successful = sum(1 for o in outcomes if o.success)
    failed = total - successful

    common = dict(
        target=identifier,
        concurrency=concurrency,
        requests_per_actor=requests_per_actor,
        total_requests=total,
        successful_requests=successful,
        failed_requests=failed,
        avg_latency_ms=sum(latencies) / total if total else 0.0,
        max_latency_ms=latencies[-1] if latencies else 0.0,
        min_latency_ms=latencies[0] if latencies else 0.0,
        requests_per_second=throughput(total, elapsed_ms),
        error_rate_percent=error_rate(failed, total),
        elapsed_ms=elapsed_ms,
        status_codes=status_distribution(outcomes),
        latencies=latencies,
        label=label,
    )

    if isinstance(first, QueryTarget):
        query = first.sql if len(targets) == 1 else ""
        return DbResult(query=query, **common)
    return HttpResult(method=first.method, **common)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def merge_results(results: Iterable[Result]) -> Summary:
    """多个 Result 合并成一个 Summary

    计数直接相加；平均延迟和错误率取各 Result 的算术平均（不加权），
    请求很少但错误很多的目标在汇总里会被低估，这是有意保留的近似。
    """
    results = list(results)
    if not results:
        return Summary()

    rps = [r.requests_per_second for r in results if r.requests_per_second is not None]
    populated = [r for r in results if r.total_requests > 0] or results

    return Summary(
        result_count=len(results),
        total_requests=sum(r.total_requests for r in results),
        successful_requests=sum(r.successful_requests for r in results),
        failed_requests=sum(r.failed_requests for r in results),
        avg_latency_ms=_mean([r.avg_latency_ms for r in results]),
        max_latency_ms=max(r.max_latency_ms for r in results),
        min_latency_ms=min(r.min_latency_ms for r in populated),
        requests_per_second=_mean(rps) if rps else None,
        error_rate_percent=_mean([r.error_rate_percent for r in results]),
    )


def pooled_latencies(results: Iterable[Result]) -> List[float]:
    latencies: List[float] = []
    for r in results:
        latencies.extend(r.latencies)
    return latencies
