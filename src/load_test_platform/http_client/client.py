import httpx
import time
from typing import Any, Dict, Optional, Tuple
from load_test_platform.config.logger import logger
from load_test_platform.config.settings import settings


class LoadHTTPClient:
    """异步 HTTP 客户端，压测期间复用同一个连接池"""

    def __init__(
        self,
        timeout: Optional[float] = None,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT
        self.user_agent = user_agent or settings.USER_AGENT
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "application/json",
                },
                # 并发数由 Load Generator 控制，这里不再限制
                limits=httpx.Limits(max_connections=None, max_keepalive_connections=None),
                transport=self._transport,
            )
        return self._client

    async def __aenter__(self) -> "LoadHTTPClient":
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        body: Optional[Any] = None,
    ) -> Tuple[Optional[int], int, Optional[str], float]:
        """
        发送一次请求并计时

        Returns:
            (状态码, 响应字节数, 错误信息, 耗时ms)；网络层失败时状态码为 None
        """
        start_time = time.perf_counter()
        client = self._get_client()

        try:
            kwargs: Dict[str, Any] = {"headers": headers or {}}
            if body is not None:
                if isinstance(body, (bytes, str)):
                    kwargs["content"] = body
                else:
                    kwargs["json"] = body

            response = await client.request(method, url, **kwargs)
            duration_ms = (time.perf_counter() - start_time) * 1000

            error_msg = None
            if response.status_code >= 400:
                error_msg = f"HTTP {response.status_code}: {response.text[:200]}"
            return response.status_code, len(response.content), error_msg, duration_ms

        except httpx.TimeoutException as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.debug("Request timeout", url=url, error=str(e))
            return None, 0, f"Timeout after {self.timeout}s", duration_ms

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.debug("Request error", url=url, error=str(e))
            return None, 0, str(e) or type(e).__name__, duration_ms
