"""
HLS 输出就绪检测

轮询工作目录，直到播放列表和至少一个切片出现，或达到最大次数。
检测失败不视为错误：播放地址照常返回，由播放器自行重试。
"""

import time
import logging
from typing import Callable, Optional

from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class ReadinessDetector:
    """就绪检测器"""

    def __init__(
        self,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._sleep = sleep
        self._clock = clock

    @staticmethod
    def is_ready(workspace: WorkspaceManager) -> bool:
        """播放列表存在且至少有一个切片"""
        return workspace.has_manifest() and workspace.has_segment()

    def wait_until_ready(
        self,
        workspace: WorkspaceManager,
        max_attempts: int,
        interval: float,
        should_continue: Optional[Callable[[], bool]] = None,
    ) -> bool:
        """等待输出就绪

        Args:
            workspace: 工作目录管理器
            max_attempts: 最大检测次数
            interval: 检测间隔（秒）
            should_continue: 返回 False 时提前结束等待（如进程已退出）

        Returns:
            是否观察到就绪
        """
        started = self._clock()

        for attempt in range(1, max(1, max_attempts) + 1):
            if self.is_ready(workspace):
                logger.info(f"HLS output ready after {attempt} check(s), {self._clock() - started:.2f}s")
                return True

            if should_continue is not None and not should_continue():
                logger.warning(f"Stopped waiting for HLS output after {attempt} check(s)")
                return False

            if attempt < max_attempts:
                self._sleep(interval)

        logger.warning(f"HLS output not ready after {max_attempts} checks ({self._clock() - started:.2f}s), returning anyway")
        return False
