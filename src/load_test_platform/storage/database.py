import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool

from load_test_platform.config.logger import logger
from load_test_platform.config.settings import settings
from load_test_platform.errors import DatabaseUnavailableError


@dataclass(frozen=True)
class PoolStats:
    """连接池快照"""

    size: int
    active: int
    idle: int
    queued: int

    def to_dict(self) -> Dict[str, int]:
        return {"size": self.size, "active": self.active, "idle": self.idle, "queued": self.queued}


class ConnectionManager:
    """被测数据库的有界连接池

    最多同时借出 pool_size 个连接，超出的调用方排队等待，
    等待超过 acquire_timeout 时抛出 sqlalchemy.exc.TimeoutError。
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        pool_size: Optional[int] = None,
        acquire_timeout: Optional[float] = None,
        query_timeout: Optional[float] = None,
    ):
        self.database_url = database_url or settings.DATABASE_URL
        self.pool_size = pool_size or settings.DB_POOL_SIZE
        self.acquire_timeout = acquire_timeout if acquire_timeout is not None else settings.DB_ACQUIRE_TIMEOUT
        self.query_timeout = query_timeout if query_timeout is not None else settings.DB_QUERY_TIMEOUT

        self.engine: Optional[AsyncEngine] = None
        self._waiting = 0

    @property
    def initialized(self) -> bool:
        return self.engine is not None

    async def initialize(self) -> None:
        """创建连接池并做一次连通性检查，连不上直接报错"""
        if self.engine is not None:
            return
        if not self.database_url:
            raise DatabaseUnavailableError("DATABASE_URL is not set")

        engine = create_async_engine(
            self.database_url,
            echo=settings.DEBUG,
            poolclass=AsyncAdaptedQueuePool,
            pool_size=self.pool_size,
            max_overflow=0,
            pool_timeout=self.acquire_timeout,
        )

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception as e:
            await engine.dispose()
            logger.error("Database unavailable", error=str(e))
            raise DatabaseUnavailableError(f"Database unavailable: {e}") from e

        self.engine = engine
        logger.info("Database pool initialized", pool_size=self.pool_size)

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[AsyncConnection]:
        """借出一个连接，退出时无论成功失败都会归还"""
        if self.engine is None:
            raise DatabaseUnavailableError("Connection manager is not initialized")

        self._waiting += 1
        try:
            conn = await self.engine.connect()
        finally:
            self._waiting -= 1

        try:
            yield conn
        finally:
            await conn.close()

    async def execute(self, sql: str, params: Optional[Dict[str, Any]] = None) -> int:
        """在池化连接上执行一条 SQL，返回行数"""
        async with self.acquire() as conn:
            result = await asyncio.wait_for(
                conn.execute(text(sql), params or {}),
                timeout=self.query_timeout,
            )
            if result.returns_rows:
                return len(result.fetchall())
            return max(result.rowcount, 0)

    def stats(self) -> PoolStats:
        if self.engine is None:
            return PoolStats(size=self.pool_size, active=0, idle=0, queued=0)

        pool = self.engine.sync_engine.pool
        return PoolStats(
            size=self.pool_size,
            active=pool.checkedout(),
            idle=pool.checkedin(),
            queued=self._waiting,
        )

    async def close(self) -> None:
        """关闭连接池"""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
