"""
转码进程监管模块

同一时刻最多持有一个 FFmpeg 子进程句柄：
- 启动进程并记录句柄
- 终止进程并等待退出
- 清理上次运行遗留的 FFmpeg 进程
"""

import os
import time
import logging
import threading
import subprocess
from collections import deque
from typing import Callable, Deque, List, Optional

import psutil

from .config import StreamConfig
from .ffmpeg import FFmpegRunner
from .workspace import WorkspaceManager

logger = logging.getLogger(__name__)

# (source_url, manifest_path, segment_pattern) -> FFmpeg 参数
CommandBuilder = Callable[[str, str, str], List[str]]

STDERR_TAIL_LINES = 20


class ProcessSupervisor:
    """转码进程监管器

    句柄锁只保护读取、替换和清空句柄的临界区，等待进程退出时不持有锁。
    """

    def __init__(
        self,
        config: StreamConfig,
        workspace: WorkspaceManager,
        runner: Optional[FFmpegRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
        process_iter=None,
    ):
        """初始化进程监管器

        Args:
            config: 转码配置
            workspace: 工作目录管理器
            runner: FFmpeg 运行器
            sleep: 等待函数（测试时替换）
            process_iter: 进程枚举函数，默认 psutil.process_iter
        """
        self.config = config
        self.workspace = workspace
        self.runner = runner or FFmpegRunner(config)
        self._sleep = sleep
        self._process_iter = process_iter or psutil.process_iter
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._stderr_tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread: Optional[threading.Thread] = None

    @property
    def pid(self) -> Optional[int]:
        with self._lock:
            return self._process.pid if self._process else None

    def is_running(self) -> bool:
        """当前记录的进程是否仍在运行"""
        with self._lock:
            process = self._process
        return process is not None and process.poll() is None

    def returncode(self) -> Optional[int]:
        """当前进程的退出码，仍在运行或没有进程时返回 None"""
        with self._lock:
            process = self._process
        if process is None:
            return None
        return process.poll()

    def stderr_tail(self, timeout: Optional[float] = None) -> List[str]:
        """最近的 FFmpeg 错误输出

        Args:
            timeout: 进程已退出时，最多等待读取线程读完剩余输出的时间（秒）
        """
        thread = self._stderr_thread
        if timeout and thread is not None and not self.is_running():
            thread.join(timeout=timeout)
        return list(self._stderr_tail)

    def start(self, source_url: str, command_builder: Optional[CommandBuilder] = None) -> int:
        """启动转码进程

        必须在 stop() 完成之后调用。

        Args:
            source_url: 直播源地址
            command_builder: 参数构建函数，默认使用 FFmpegRunner.build_arguments

        Returns:
            新进程 PID

        Raises:
            TranscoderNotFoundError: 所有候选可执行文件都无法启动
        """
        with self._lock:
            if self._process is not None and self._process.poll() is None:
                raise RuntimeError("A transcoder process is already running; call stop() first")

        builder = command_builder or self.runner.build_arguments
        arguments = builder(source_url, self.workspace.manifest_path, self.workspace.segment_pattern)

        process = self.runner.start_process(arguments)

        tail: Deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        with self._lock:
            self._process = process
            self._stderr_tail = tail

        if process.stderr is not None:
            self._stderr_thread = threading.Thread(
                target=self._drain_stderr,
                args=(process, tail),
                daemon=True,
                name=f"FFmpegStderr-{process.pid}",
            )
            self._stderr_thread.start()

        return process.pid

    def stop(self) -> bool:
        """停止转码进程

        先终止自身记录的进程，再尽力清理遗留进程，最后等待一小段时间让系统释放文件句柄。

        Returns:
            是否终止了自身记录的进程
        """
        with self._lock:
            process = self._process
            self._process = None

        stopped = False
        if process is not None:
            stopped = self._terminate(process)

        if self.config.kill_orphans:
            self.kill_orphans()

        if self._stderr_thread is not None:
            self._stderr_thread.join(timeout=1)
            self._stderr_thread = None

        if self.config.stop_settle_delay > 0:
            self._sleep(self.config.stop_settle_delay)

        return stopped

    def _terminate(self, process: subprocess.Popen) -> bool:
        """终止进程，超时后强制 kill；错误只记录日志"""
        try:
            if process.poll() is None:
                process.terminate()
                try:
                    process.wait(timeout=self.config.terminate_timeout)
                except subprocess.TimeoutExpired:
                    logger.warning(f"FFmpeg process {process.pid} did not exit in {self.config.terminate_timeout}s, killing")
                    process.kill()
                    process.wait(timeout=self.config.terminate_timeout)
            logger.info(f"Stopped FFmpeg process {process.pid} (exit code {process.returncode})")
            return True
        except Exception as e:
            logger.error(f"Error stopping FFmpeg process {process.pid}: {e}")
            return False

    def kill_orphans(self) -> int:
        """清理未被当前句柄跟踪的 FFmpeg 进程

        只匹配进程名为 ffmpeg 且命令行参数指向工作目录内路径的进程，
        通常是上一次运行异常退出后遗留的。

        Returns:
            被终止的进程数量
        """
        names = {self.config.ffmpeg_name.lower(), f"{self.config.ffmpeg_name.lower()}.exe"}
        marker = os.path.normcase(os.path.abspath(self.workspace.path))
        own_pid = os.getpid()
        killed = 0

        try:
            processes = list(self._process_iter(["pid", "name", "cmdline"]))
        except Exception as e:
            logger.warning(f"Failed to enumerate processes for orphan cleanup: {e}")
            return 0

        for proc in processes:
            try:
                info = proc.info
                if info.get("pid") == own_pid:
                    continue
                if (info.get("name") or "").lower() not in names:
                    continue
                cmdline = info.get("cmdline") or []
                if not any(_is_within(marker, arg) for arg in cmdline):
                    continue
                proc.kill()
                proc.wait(timeout=self.config.terminate_timeout)
                killed += 1
                logger.info(f"Killed orphan FFmpeg process {info.get('pid')}")
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.TimeoutExpired) as e:
                logger.debug(f"Skipping orphan candidate: {e}")

        return killed

    def _drain_stderr(self, process: subprocess.Popen, tail: Deque[str]):
        """读取 FFmpeg 的标准错误，记录日志并保留最后几行"""
        stream = process.stderr
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").strip() if isinstance(raw, bytes) else str(raw).strip()
                if not line:
                    continue
                tail.append(line)
                logger.debug(f"FFMPEG ({process.pid}): {line}")
        except (OSError, ValueError) as e:
            logger.debug(f"FFmpeg stderr reader for {process.pid} stopped: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass


def _is_within(directory: str, arg: str) -> bool:
    """参数是否为目录本身或目录下的路径（按路径分隔符边界匹配）"""
    path = os.path.normcase(arg)
    return path == directory or path.startswith(directory.rstrip(os.sep) + os.sep)
