import json
import random
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from load_test_platform.config.logger import logger
from load_test_platform.config.settings import settings
from load_test_platform.models.report import Report
from load_test_platform.models.scenario_run import ScenarioRun


def _timestamped_name(prefix: str) -> str:
    """时间戳 + 6 位随机数，避免同一秒内的重名"""
    ts = datetime.now().strftime("%Y%m%d_%H%M%S")
    rnd = f"{random.randint(0, 999999):06d}"
    return f"{prefix}-{ts}_{rnd}.json"


class JSONResultWriter:
    """JSON 结果导出"""

    def __init__(self, output_dir: Optional[str] = None):
        self.output_dir = Path(output_dir or settings.RESULTS_DIR)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def _write(self, path: Path, data: Dict[str, Any]) -> Optional[Path]:
        try:
            with open(path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        except OSError as e:
            logger.error("Failed to write JSON results", path=str(path), error=str(e))
            return None

        logger.info("Results written", path=str(path))
        return path

    async def write_report(self, report: Report, prefix: Optional[str] = None) -> Optional[Path]:
        """写入完整报告，返回文件路径；写失败时返回 None"""
        prefix = prefix or f"comprehensive-load-test-{report.metadata.environment}"
        return self._write(self.output_dir / _timestamped_name(prefix), report.to_dict())

    async def write_run(self, run: ScenarioRun) -> Optional[Path]:
        """写入单个场景的结果"""
        return self._write(self.output_dir / _timestamped_name(f"scenario-{run.name}"), run.to_dict())
