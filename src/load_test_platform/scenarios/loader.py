import copy
import re
from dataclasses import fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from load_test_platform.config.logger import logger
from load_test_platform.config.settings import settings
from load_test_platform.errors import ConfigurationError
from load_test_platform.scenarios.model import (
    DatabaseTestConfig,
    EndpointConfig,
    EnvironmentConfig,
    ErrorRateThresholds,
    LoadTestConfig,
    MonitoringConfig,
    QueryConfig,
    ResponseTimeThresholds,
    ScenarioConfig,
    StressConfig,
    ThroughputThresholds,
    Thresholds,
)


_DURATION_UNITS = {
    "ms": 0.001,
    "millisecond": 0.001,
    "s": 1,
    "sec": 1,
    "second": 1,
    "m": 60,
    "min": 60,
    "minute": 60,
    "h": 3600,
    "hour": 3600,
}

_DURATION_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z]*)\s*$")


def parse_duration(value: Union[str, int, float, None]) -> Optional[float]:
    """把 "2 minutes" / "30 seconds" / 90 这样的时长解析成秒"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)

    match = _DURATION_PATTERN.match(str(value))
    if not match:
        raise ConfigurationError(f"Invalid duration: {value!r}")

    amount = float(match.group(1))
    unit = match.group(2).lower() or "s"
    if unit.endswith("s") and unit not in _DURATION_UNITS:
        unit = unit[:-1]
    if unit not in _DURATION_UNITS:
        raise ConfigurationError(f"Unknown duration unit in {value!r}")
    return amount * _DURATION_UNITS[unit]


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """递归合并字典，override 优先"""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _build(cls, data: Optional[Dict[str, Any]]):
    """只取 dataclass 认识的字段，多余的 key 忽略"""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (data or {}).items() if k in known})


class ScenarioLoader:
    """YAML 压测配置加载器"""

    def __init__(self, path: Optional[Path] = None, override_path: Optional[Path] = None):
        self.path = Path(path) if path else settings.LOAD_CONFIG_DEFAULT
        if override_path is None and settings.LOAD_CONFIG_PATH:
            override_path = settings.LOAD_CONFIG_PATH
        self.override_path = Path(override_path) if override_path else None

    def load(self) -> LoadTestConfig:
        """加载配置；文件缺失或格式错误直接抛 ConfigurationError"""
        data = self._read(self.path)
        if self.override_path is not None:
            data = deep_merge(data, self._read(self.override_path))
            logger.info("Merged load test config override", path=str(self.override_path))

        config = self._parse_config(data)
        logger.info(
            "Loaded load test config",
            path=str(self.path),
            scenarios=len(config.scenarios),
            environments=len(config.environments),
        )
        return config

    def _read(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            raise ConfigurationError(f"Load test config not found: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Load test config must be a mapping: {path}")
        return data

    def _parse_config(self, data: Dict[str, Any]) -> LoadTestConfig:
        """解析 YAML 数据为 LoadTestConfig"""

        thresholds_data = data.get("thresholds") or {}
        thresholds = self._parse_thresholds(thresholds_data)

        endpoints: Dict[str, EndpointConfig] = {}
        for group in (data.get("endpoints") or {}).values():
            for path, entry in (group or {}).items():
                endpoints[path] = EndpointConfig(path=path, **{
                    k: v for k, v in (entry or {}).items()
                    if k in ("method", "weight", "critical", "auth")
                })

        scenarios = {
            name: self._parse_scenario(name, entry or {}, endpoints)
            for name, entry in (data.get("scenarios") or {}).items()
        }

        environments = {}
        for name, entry in (data.get("environments") or {}).items():
            entry = entry or {}
            if "base_url" not in entry:
                raise ConfigurationError(f"Environment '{name}' has no base_url")
            env_thresholds = self._parse_thresholds(
                deep_merge(thresholds_data, entry.get("thresholds") or {})
            )
            environments[name] = EnvironmentConfig(
                name=name,
                base_url=str(entry["base_url"]).rstrip("/"),
                scenarios=list(entry.get("scenarios") or []),
                thresholds=env_thresholds,
            )

        suite = data.get("suite") or {}
        config = LoadTestConfig(
            environments=environments,
            scenarios=scenarios,
            endpoints=endpoints,
            thresholds=thresholds,
            stress=_build(StressConfig, data.get("stress")),
            monitoring=_build(MonitoringConfig, data.get("monitoring")),
            database=_build(DatabaseTestConfig, data.get("database")),
        )
        if suite.get("sequence"):
            config.comprehensive_sequence = list(suite["sequence"])
        if suite.get("spike"):
            config.spike_scenario = suite["spike"]
        if suite.get("endurance"):
            config.endurance_scenario = suite["endurance"]
        return config

    def _parse_thresholds(self, data: Dict[str, Any]) -> Thresholds:
        return Thresholds(
            response_time=_build(ResponseTimeThresholds, data.get("response_time")),
            error_rate=_build(ErrorRateThresholds, data.get("error_rate")),
            throughput=_build(ThroughputThresholds, data.get("throughput")),
        )

    def _parse_scenario(
        self,
        name: str,
        entry: Dict[str, Any],
        catalogue: Dict[str, EndpointConfig],
    ) -> ScenarioConfig:
        endpoints = []
        for item in entry.get("endpoints") or []:
            if isinstance(item, dict):
                endpoints.append(_build(EndpointConfig, item))
            else:
                # 只写了 path 的，从接口目录里取 method 等信息
                endpoints.append(catalogue.get(item) or EndpointConfig(path=item))

        queries = []
        for i, item in enumerate(entry.get("database_queries") or []):
            if isinstance(item, dict):
                queries.append(_build(QueryConfig, item))
            else:
                queries.append(QueryConfig(name=f"query_{i + 1}", sql=str(item)))

        return ScenarioConfig(
            name=name,
            title=entry.get("name", name),
            description=entry.get("description", ""),
            concurrent_users=int(entry.get("concurrent_users", 10)),
            requests_per_user=int(entry.get("requests_per_user", entry.get("queries_per_user", 1))),
            delay_ms=int(entry.get("delay_between_requests", 100)),
            duration_seconds=parse_duration(entry.get("duration")),
            endpoints=endpoints,
            database_queries=queries,
            pattern=entry.get("pattern"),
            base_users=entry.get("base_users"),
            spike_users=entry.get("spike_users"),
        )


def load_config(path: Optional[Path] = None, override_path: Optional[Path] = None) -> LoadTestConfig:
    return ScenarioLoader(path, override_path).load()
