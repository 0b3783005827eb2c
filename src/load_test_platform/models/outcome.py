from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union


@dataclass(frozen=True)
class HttpTarget:
    """一个 HTTP 压测目标（单个 URL）"""

    url: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict, compare=False)
    body: Optional[Any] = field(default=None, compare=False)

    kind: ClassVar[str] = "http"

    @property
    def identifier(self) -> str:
        return self.url


@dataclass(frozen=True)
class QueryTarget:
    """一个数据库压测目标（命名 SQL 查询）"""

    name: str
    sql: str
    params: Dict[str, Any] = field(default_factory=dict, compare=False)

    kind: ClassVar[str] = "db"

    @property
    def identifier(self) -> str:
        return self.name


Target = Union[HttpTarget, QueryTarget]


@dataclass(frozen=True)
class RequestOutcome:
    """单次请求/查询的结果，创建后不可变"""

    timestamp: float
    latency_ms: float
    success: bool
    status_or_error_code: str  # HTTP 状态码，或 "ERROR" / 驱动异常类名
    error_message: Optional[str] = None
    rows_or_bytes: Optional[int] = None

    def __post_init__(self):
        if self.latency_ms < 0:
            raise ValueError(f"latency_ms must be >= 0, got {self.latency_ms}")
