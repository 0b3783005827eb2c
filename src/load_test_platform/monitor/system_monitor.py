import os
import platform
import threading
import time
from typing import Any, Dict, List, Optional

import psutil

from load_test_platform.config.settings import settings


def _stats(values: List[Optional[float]]) -> Optional[Dict[str, float]]:
    vv = [float(v) for v in values if v is not None]
    if not vv:
        return None
    return {
        "avg": round(sum(vv) / len(vv), 2),
        "min": round(min(vv), 2),
        "max": round(max(vv), 2),
    }


class SystemMonitor:
    """压测机本身的资源采样（CPU / 内存 / 进程 RSS）

    用 start() 在后台线程里按 interval 采样，stop() 结束；
    snapshot() 随时取一次当前值。
    """

    def __init__(self, interval: Optional[float] = None):
        self.interval = interval if interval is not None else settings.SYSTEM_MONITOR_INTERVAL
        self.records: List[Dict[str, Any]] = []
        self.started_at = time.time()
        self.server_info = self._get_server_info()

        self._process = psutil.Process(os.getpid())
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _get_server_info(self) -> Dict[str, Any]:
        vm = psutil.virtual_memory()
        return {
            "hostname": platform.node(),
            "os": platform.platform(),
            "python": platform.python_version(),
            "cpu_logical_cores": psutil.cpu_count(logical=True),
            "cpu_physical_cores": psutil.cpu_count(logical=False),
            "mem_total_mb": int(vm.total / 1024 / 1024),
        }

    def snapshot(self) -> Dict[str, Any]:
        vm = psutil.virtual_memory()
        return {
            "ts": time.time(),
            "cpu_pct": psutil.cpu_percent(),
            "mem_pct": vm.percent,
            "mem_used_mb": int(vm.used / 1024 / 1024),
            "mem_available_mb": int(getattr(vm, "available", 0) / 1024 / 1024),
            "process_rss_mb": round(self._process.memory_info().rss / 1024 / 1024, 2),
            "uptime_s": round(time.time() - self.started_at, 2),
        }

    def run(self) -> None:
        while not self._stop_event.is_set():
            self.records.append(self.snapshot())
            self._stop_event.wait(self.interval)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._thread = None

    def summary(self) -> Dict[str, Any]:
        """报告里 performance.system 的内容"""
        records = self.records or [self.snapshot()]
        return {
            "server_info": self.server_info,
            "samples": len(self.records),
            "current": records[-1],
            "summary": {
                "cpu_pct": _stats([r.get("cpu_pct") for r in records]),
                "mem_pct": _stats([r.get("mem_pct") for r in records]),
                "process_rss_mb": _stats([r.get("process_rss_mb") for r in records]),
            },
        }
