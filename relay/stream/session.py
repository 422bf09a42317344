"""
直播会话数据模型

定义单一转码会话的数据结构和状态流转：
Idle -> Starting -> (Ready | Failed) -> Stopping -> Idle
"""

import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, Dict, Any


class SessionPhase(Enum):
    """会话状态枚举"""
    IDLE = "idle"            # 空闲
    STARTING = "starting"    # 启动中（进程已创建，等待首个切片）
    READY = "ready"          # 已就绪（播放列表与切片均已生成）
    FAILED = "failed"        # 启动失败
    STOPPING = "stopping"    # 停止中


@dataclass
class StreamSession:
    """直播会话

    同一时刻最多存在一个实例；新的启动请求会替换旧会话。
    进程句柄由 ProcessSupervisor 独占，这里只记录 PID。
    """

    source_url: str
    phase: SessionPhase = SessionPhase.IDLE
    pid: Optional[int] = None
    playback_url: Optional[str] = None
    error: Optional[str] = None

    # 时间戳
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    ready_at: Optional[float] = None
    stopped_at: Optional[float] = None

    def __post_init__(self):
        if isinstance(self.phase, str):
            self.phase = SessionPhase(self.phase)

    def mark_starting(self, pid: int):
        """标记为启动中"""
        self.phase = SessionPhase.STARTING
        self.pid = pid
        self.started_at = time.time()
        self.updated_at = time.time()

    def mark_ready(self):
        """标记为已就绪，只允许从启动中进入"""
        if self.phase == SessionPhase.STARTING:
            self.phase = SessionPhase.READY
            self.ready_at = time.time()
        self.updated_at = time.time()

    def mark_failed(self, error: str):
        """标记为启动失败

        Args:
            error: 错误信息
        """
        self.phase = SessionPhase.FAILED
        self.error = error
        self.updated_at = time.time()

    def mark_stopping(self):
        """标记为停止中"""
        self.phase = SessionPhase.STOPPING
        self.updated_at = time.time()

    def mark_idle(self):
        """标记为空闲（停止和清理已完成）"""
        self.phase = SessionPhase.IDLE
        self.pid = None
        self.stopped_at = time.time()
        self.updated_at = time.time()

    def is_active(self) -> bool:
        """判断会话是否活跃（启动中或已就绪）"""
        return self.phase in (SessionPhase.STARTING, SessionPhase.READY)

    def get_elapsed_time(self) -> float:
        """获取会话已运行时间（秒）"""
        if self.started_at is None:
            return 0
        end_time = self.stopped_at or time.time()
        return end_time - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """转换为字典（用于 API 响应）"""
        result = {
            "source_url": self.source_url,
            "phase": self.phase.value,
            "pid": self.pid,
            "playback_url": self.playback_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "elapsed": round(self.get_elapsed_time(), 3),
        }

        if self.started_at:
            result["started_at"] = self.started_at
        if self.ready_at:
            result["ready_at"] = self.ready_at
        if self.stopped_at:
            result["stopped_at"] = self.stopped_at
        if self.error:
            result["error"] = self.error

        return result
