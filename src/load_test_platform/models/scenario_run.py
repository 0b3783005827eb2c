from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from load_test_platform.models.result import DbResult, HttpResult, Result


class RunKind(str, Enum):
    SCENARIO = "scenario"
    SPIKE = "spike"
    ENDURANCE = "endurance"
    CONTINUOUS = "continuous"
    STRESS = "stress"
    POOL = "pool"


class StabilityTrend(str, Enum):
    STABLE = "stable"
    DEGRADING = "degrading"
    IMPROVING = "improving"


@dataclass(frozen=True)
class ScenarioRun:
    """一次命名的测试执行；seal 之后只读"""

    name: str
    kind: RunKind
    environment: str
    started_at: datetime
    finished_at: datetime
    results: Tuple[Result, ...] = ()

    # 派生字段（按场景类型填写）
    spike_multiplier: Optional[float] = None
    degradation_ratio: Optional[float] = None
    recovery_ratio: Optional[float] = None
    passed: Optional[bool] = None
    stability_score: Optional[float] = None
    stable: Optional[bool] = None
    stability_trend: Optional[StabilityTrend] = None
    breaking_point: Optional[int] = None
    max_stable_users: Optional[int] = None
    pool_stats: Optional[Dict[str, Any]] = None

    notes: Tuple[str, ...] = ()

    @property
    def duration_ms(self) -> float:
        return (self.finished_at - self.started_at).total_seconds() * 1000

    @property
    def http_results(self) -> List[HttpResult]:
        return [r for r in self.results if isinstance(r, HttpResult)]

    @property
    def db_results(self) -> List[DbResult]:
        return [r for r in self.results if isinstance(r, DbResult)]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "environment": self.environment,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat(),
            "duration_ms": self.duration_ms,
            "results": [r.to_dict() for r in self.results],
            "spike_multiplier": self.spike_multiplier,
            "degradation_ratio": self.degradation_ratio,
            "recovery_ratio": self.recovery_ratio,
            "passed": self.passed,
            "stability_score": self.stability_score,
            "stable": self.stable,
            "stability_trend": self.stability_trend.value if self.stability_trend else None,
            "breaking_point": self.breaking_point,
            "max_stable_users": self.max_stable_users,
            "pool_stats": self.pool_stats,
            "notes": list(self.notes),
        }


class RunAccumulator:
    """单个 ScenarioRun 的结果累加器

    每次运行新建一个，执行过程中追加结果，结束时 seal 成只读的 ScenarioRun，
    不同运行之间不共享任何状态。
    """

    def __init__(self, name: str, kind: RunKind, environment: str):
        self.name = name
        self.kind = kind
        self.environment = environment
        self.started_at = datetime.now(timezone.utc)
        self._results: List[Result] = []
        self._notes: List[str] = []
        self._sealed = False

    @property
    def results(self) -> Tuple[Result, ...]:
        return tuple(self._results)

    def add(self, result: Result) -> None:
        if self._sealed:
            raise RuntimeError(f"Run '{self.name}' is sealed")
        self._results.append(result)

    def note(self, message: str) -> None:
        if self._sealed:
            raise RuntimeError(f"Run '{self.name}' is sealed")
        self._notes.append(message)

    def seal(self, **derived) -> ScenarioRun:
        if self._sealed:
            raise RuntimeError(f"Run '{self.name}' is already sealed")
        self._sealed = True
        return ScenarioRun(
            name=self.name,
            kind=self.kind,
            environment=self.environment,
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc),
            results=tuple(self._results),
            notes=tuple(self._notes),
            **derived,
        )


class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ScenarioOutcome:
    """场景执行器的返回值：完成 / 跳过 / 失败"""

    name: str
    status: OutcomeStatus
    run: Optional[ScenarioRun] = None
    reason: Optional[str] = None

    @classmethod
    def completed(cls, run: ScenarioRun) -> "ScenarioOutcome":
        return cls(name=run.name, status=OutcomeStatus.COMPLETED, run=run)

    @classmethod
    def skipped(cls, name: str, reason: str) -> "ScenarioOutcome":
        return cls(name=name, status=OutcomeStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, name: str, reason: str) -> "ScenarioOutcome":
        return cls(name=name, status=OutcomeStatus.FAILED, reason=reason)

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED


@dataclass(frozen=True)
class SuiteResult:
    """一次编排调用（可能包含多个场景）的全部结果"""

    outcomes: Tuple[ScenarioOutcome, ...] = ()
    warnings: Tuple[str, ...] = field(default=())

    @property
    def runs(self) -> List[ScenarioRun]:
        return [o.run for o in self.outcomes if o.status == OutcomeStatus.COMPLETED and o.run is not None]
