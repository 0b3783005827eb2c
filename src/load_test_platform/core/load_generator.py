import asyncio
import time
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from load_test_platform.config.logger import logger
from load_test_platform.core.executor import RequestExecutor
from load_test_platform.core.metrics import build_result
from load_test_platform.models.outcome import RequestOutcome, Target
from load_test_platform.models.result import Result


class LoadGenerator:
    """负载生成器 - N 个并发 actor，每个顺序发 M 次请求"""

    def __init__(
        self,
        executor: RequestExecutor,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self.executor = executor
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        target: Union[Target, Sequence[Target]],
        concurrency: int,
        requests_per_actor: int,
        inter_request_delay_ms: float = 0,
        label: Optional[str] = None,
    ) -> Result:
        """
        执行一个批次，所有 actor 结束后才聚合

        target 可以是一个目标或目标列表；列表时每个 actor 从自己的偏移开始轮询。
        """
        targets = list(target) if isinstance(target, (list, tuple)) else [target]
        if not targets:
            raise ValueError("target list must not be empty")
        if concurrency <= 0:
            raise ValueError(f"concurrency must be > 0, got {concurrency}")
        if requests_per_actor < 1:
            raise ValueError(f"requests_per_actor must be >= 1, got {requests_per_actor}")
        if inter_request_delay_ms < 0:
            raise ValueError(f"inter_request_delay_ms must be >= 0, got {inter_request_delay_ms}")

        delay_s = inter_request_delay_ms / 1000.0

        async def actor(index: int) -> List[RequestOutcome]:
            outcomes: List[RequestOutcome] = []
            for i in range(requests_per_actor):
                current = targets[(index + i) % len(targets)]
                outcomes.append(await self.executor.execute(current))
                # 最后一次请求之后不再等待
                if delay_s > 0 and i < requests_per_actor - 1:
                    await self._sleep(delay_s)
            return outcomes

        started = self._clock()
        tasks = [asyncio.ensure_future(actor(i)) for i in range(concurrency)]
        try:
            per_actor = await asyncio.gather(*tasks)
        except BaseException:
            # 任一 actor 出错时，先取消并等待其余 actor 退出，批次结束后不再有流量
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        elapsed_ms = (self._clock() - started) * 1000

        outcomes = [o for batch in per_actor for o in batch]
        result = build_result(
            targets,
            outcomes,
            concurrency=concurrency,
            requests_per_actor=requests_per_actor,
            elapsed_ms=elapsed_ms,
            label=label,
        )

        logger.info(
            "Batch completed",
            target=result.target,
            label=label,
            concurrency=concurrency,
            total=result.total_requests,
            failed=result.failed_requests,
            avg_latency_ms=round(result.avg_latency_ms, 2),
            rps=round(result.requests_per_second, 2) if result.requests_per_second else None,
        )
        return result
