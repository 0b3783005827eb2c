import time
from typing import Optional

from load_test_platform.config.logger import logger
from load_test_platform.http_client.client import LoadHTTPClient
from load_test_platform.models.outcome import HttpTarget, QueryTarget, RequestOutcome, Target
from load_test_platform.storage.database import ConnectionManager


class RequestExecutor:
    """请求执行器 - 对一个目标发起一次调用并计时

    execute() 不抛异常：超时、连接失败、驱动错误都会变成 success=False 的结果。
    """

    def __init__(
        self,
        http_client: Optional[LoadHTTPClient] = None,
        connection_manager: Optional[ConnectionManager] = None,
    ):
        self.http_client = http_client or LoadHTTPClient()
        self.connection_manager = connection_manager

    async def execute(self, target: Target) -> RequestOutcome:
        if isinstance(target, QueryTarget):
            return await self._execute_query(target)
        return await self._execute_http(target)

    async def _execute_http(self, target: HttpTarget) -> RequestOutcome:
        timestamp = time.time()
        status, size, error, duration_ms = await self.http_client.send(
            target.method,
            target.url,
            headers=target.headers,
            body=target.body,
        )

        if status is None:
            # 网络层失败统一记为 ERROR
            return RequestOutcome(
                timestamp=timestamp,
                latency_ms=duration_ms,
                success=False,
                status_or_error_code="ERROR",
                error_message=error,
            )

        return RequestOutcome(
            timestamp=timestamp,
            latency_ms=duration_ms,
            success=status < 400,
            status_or_error_code=str(status),
            error_message=error,
            rows_or_bytes=size,
        )

    async def _execute_query(self, target: QueryTarget) -> RequestOutcome:
        timestamp = time.time()
        start = time.perf_counter()

        if self.connection_manager is None:
            return RequestOutcome(
                timestamp=timestamp,
                latency_ms=0.0,
                success=False,
                status_or_error_code="DatabaseUnavailableError",
                error_message="No connection manager configured",
            )

        try:
            rows = await self.connection_manager.execute(target.sql, target.params)
        except Exception as e:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.debug("Query failed", query=target.name, error=str(e))
            return RequestOutcome(
                timestamp=timestamp,
                latency_ms=duration_ms,
                success=False,
                status_or_error_code=type(e).__name__,
                error_message=str(e) or type(e).__name__,
            )

        return RequestOutcome(
            timestamp=timestamp,
            latency_ms=(time.perf_counter() - start) * 1000,
            success=True,
            status_or_error_code="OK",
            rows_or_bytes=rows,
        )
