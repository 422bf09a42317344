"""
直播会话控制器

负责单一转码会话的完整生命周期，"最新请求优先"：
- 启动：停止旧会话 -> 准备工作目录 -> 确保分发服务运行 -> 启动 FFmpeg -> 等待就绪 -> 返回播放地址
- 停止：终止 FFmpeg -> 清空工作目录
"""

import time
import logging
import threading
from typing import Any, Callable, Dict, Optional

from .config import StreamConfig
from .delivery import DeliveryServer
from .errors import InvalidSourceError, SourceUnreachableError, TranscoderNotFoundError
from .ffmpeg import get_ffmpeg_runner, sanitize_url
from .readiness import ReadinessDetector
from .session import SessionPhase, StreamSession
from .supervisor import ProcessSupervisor
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)


class SessionController:
    """直播会话控制器

    由应用的组合根创建并传给 API 层；分发服务启动标志和进程句柄都是
    本实例持有的字段，而不是全局状态。
    """

    def __init__(
        self,
        config: StreamConfig,
        workspace: Optional[WorkspaceManager] = None,
        supervisor: Optional[ProcessSupervisor] = None,
        delivery: Optional[DeliveryServer] = None,
        detector: Optional[ReadinessDetector] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """初始化会话控制器

        Args:
            config: 转码配置
            workspace: 工作目录管理器
            supervisor: 进程监管器
            delivery: 分发服务
            detector: 就绪检测器
            sleep: 等待函数（测试时替换）
        """
        self.config = config
        self.workspace = workspace or WorkspaceManager(config)
        self.supervisor = supervisor or ProcessSupervisor(config, self.workspace, get_ffmpeg_runner(config))
        self.delivery = delivery or DeliveryServer(config)
        self.detector = detector or ReadinessDetector()
        self._sleep = sleep
        self._session_lock = threading.Lock()
        self.session: Optional[StreamSession] = None

    def start_session(self, source_url: str) -> str:
        """启动新的转码会话（已有会话会先被停止）

        就绪检测超时不视为失败，播放地址照常返回。

        Args:
            source_url: 直播源地址

        Returns:
            播放地址

        Raises:
            InvalidSourceError: 源地址为空
            TranscoderNotFoundError: 找不到可用的 ffmpeg
            SourceUnreachableError: ffmpeg 在产生输出前退出
        """
        source_url = (source_url or "").strip()
        if not source_url:
            raise InvalidSourceError("Source URL is required")

        with self._session_lock:
            self._stop_locked()

            session = StreamSession(source_url=source_url)
            self.session = session

            self.workspace.prepare()

            if self.delivery.ensure_started() and self.config.listener_delay > 0:
                self._sleep(self.config.listener_delay)

            logger.info(f"Starting stream session for {sanitize_url(source_url)}")
            try:
                pid = self.supervisor.start(source_url)
            except TranscoderNotFoundError as e:
                session.mark_failed(e.message)
                logger.error(f"Cannot start stream session: {e.message} ({e.detail})")
                raise

            session.mark_starting(pid)
            session.playback_url = self.config.get_playback_url(port=self.delivery.bound_port)

            ready = self.detector.wait_until_ready(
                self.workspace,
                self.config.ready_max_attempts,
                self.config.ready_interval,
                should_continue=self.supervisor.is_running,
            )

            if ready:
                session.mark_ready()
            else:
                returncode = self.supervisor.returncode()
                if returncode is not None and returncode != 0:
                    tail = self.supervisor.stderr_tail(timeout=1.0)
                    detail = tail[-1] if tail else f"ffmpeg exited with code {returncode}"
                    session.mark_failed(detail)
                    logger.error(f"Transcoder exited with code {returncode} before producing output: {detail}")
                    raise SourceUnreachableError("Source unreachable", detail=detail)

            return session.playback_url

    def stop_session(self) -> int:
        """停止当前会话并清空工作目录（没有会话时也可以安全调用）

        Returns:
            删除的文件数量
        """
        with self._session_lock:
            return self._stop_locked()

    def _stop_locked(self) -> int:
        session = self.session
        if session is not None and session.phase != SessionPhase.IDLE:
            session.mark_stopping()

        self.supervisor.stop()
        removed = self.workspace.purge()

        if session is not None and session.phase == SessionPhase.STOPPING:
            session.mark_idle()
            logger.info(f"Stream session for {sanitize_url(session.source_url)} stopped")
        return removed

    def status(self) -> Dict[str, Any]:
        """获取当前会话状态"""
        session = self.session
        result = session.to_dict() if session else {"phase": SessionPhase.IDLE.value}
        result["running"] = self.supervisor.is_running()
        result["delivery_started"] = self.delivery.is_started
        result["files"] = self.workspace.list_files()
        return result

    def shutdown(self):
        """程序退出时调用：停止会话并关闭分发服务"""
        self.stop_session()
        self.delivery.shutdown()


def get_session_controller(config: StreamConfig) -> SessionController:
    """获取会话控制器实例

    Args:
        config: 转码配置

    Returns:
        SessionController 实例
    """
    return SessionController(config)
