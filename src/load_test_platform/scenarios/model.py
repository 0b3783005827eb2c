from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from load_test_platform.errors import UnknownEnvironmentError, UnknownScenarioError


@dataclass
class ResponseTimeThresholds:
    """响应时间阈值（ms）"""

    excellent: float = 200
    good: float = 500
    acceptable: float = 1000
    poor: float = 2000
    critical: float = 5000


@dataclass
class ErrorRateThresholds:
    """错误率阈值（%）"""

    excellent: float = 0.1
    good: float = 1
    acceptable: float = 5
    critical: float = 10


@dataclass
class ThroughputThresholds:
    """吞吐阈值（RPS）"""

    low: float = 50
    medium: float = 200
    high: float = 500
    excellent: float = 1000


@dataclass
class Thresholds:
    response_time: ResponseTimeThresholds = field(default_factory=ResponseTimeThresholds)
    error_rate: ErrorRateThresholds = field(default_factory=ErrorRateThresholds)
    throughput: ThroughputThresholds = field(default_factory=ThroughputThresholds)


@dataclass
class EndpointConfig:
    """被测接口"""

    path: str
    method: str = "GET"
    weight: int = 1
    critical: bool = False
    auth: bool = False


@dataclass
class QueryConfig:
    """被测 SQL"""

    name: str
    sql: str
    weight: int = 1
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScenarioConfig:
    """压测场景配置"""

    name: str
    title: str = ""
    description: str = ""

    # 用户配置
    concurrent_users: int = 10
    requests_per_user: int = 1
    delay_ms: int = 100
    duration_seconds: Optional[float] = None

    endpoints: List[EndpointConfig] = field(default_factory=list)
    database_queries: List[QueryConfig] = field(default_factory=list)

    # spike 模式
    pattern: Optional[str] = None
    base_users: Optional[int] = None
    spike_users: Optional[int] = None


@dataclass
class EnvironmentConfig:
    name: str
    base_url: str
    scenarios: List[str] = field(default_factory=list)
    thresholds: Thresholds = field(default_factory=Thresholds)


@dataclass
class StressConfig:
    """逐级加压：从 start_users 开始每次加 step，直到出现拐点"""

    endpoint: str = "/api/health"
    start_users: int = 5
    max_users: int = 50
    step: int = 5
    requests_per_step: int = 20
    delay_ms: int = 50
    error_rate_limit: float = 10.0
    latency_limit_ms: float = 5000.0


@dataclass
class MonitoringConfig:
    """持续监控探针"""

    endpoint: str = "/api/health"
    concurrent_users: int = 5
    requests_per_user: int = 2
    delay_ms: int = 100
    interval_seconds: float = 120.0
    duration_minutes: float = 60.0


@dataclass
class DatabaseTestConfig:
    query_runs: int = 10
    query_delay_ms: int = 10
    max_concurrent_users: int = 30
    max_duration_seconds: int = 60
    seconds_per_query: float = 2.0  # 每个用户约 2 秒一次查询
    concurrent_delay_ms: int = 5
    pool_connections: int = 20
    pool_queries_per_connection: int = 5
    pool_probe_sql: str = "SELECT 1"


@dataclass
class LoadTestConfig:
    environments: Dict[str, EnvironmentConfig] = field(default_factory=dict)
    scenarios: Dict[str, ScenarioConfig] = field(default_factory=dict)
    endpoints: Dict[str, EndpointConfig] = field(default_factory=dict)
    thresholds: Thresholds = field(default_factory=Thresholds)
    stress: StressConfig = field(default_factory=StressConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    database: DatabaseTestConfig = field(default_factory=DatabaseTestConfig)

    comprehensive_sequence: List[str] = field(
        default_factory=lambda: ["lightLoad", "moderateLoad", "heavyLoad"]
    )
    spike_scenario: str = "spikeTest"
    endurance_scenario: str = "enduranceTest"

    def scenario(self, name: str) -> ScenarioConfig:
        try:
            return self.scenarios[name]
        except KeyError:
            raise UnknownScenarioError(name, self.scenarios.keys()) from None

    def environment(self, name: str) -> EnvironmentConfig:
        try:
            return self.environments[name]
        except KeyError:
            raise UnknownEnvironmentError(name, self.environments.keys()) from None
