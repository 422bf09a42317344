"""
FFmpeg 命令与进程启动模块

负责构建直播转 HLS 的 FFmpeg 命令，并按候选顺序解析可执行文件。
"""

import os
import shutil
import subprocess
import logging
from typing import Callable, List, Optional
from urllib.parse import urlsplit, urlunsplit

from .config import StreamConfig
from .errors import TranscoderNotFoundError

logger = logging.getLogger(__name__)

# 随包附带的 ffmpeg 默认位置：<项目根目录>/bin/ffmpeg
BUNDLED_BIN_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))), "bin")

RECONNECT_SCHEMES = {"http", "https"}

PopenFactory = Callable[..., subprocess.Popen]


class FFmpegRunner:
    """FFmpeg 命令构建与启动

    可执行文件解析是一个显式的有序候选列表：随包附带的路径优先，
    其次是 PATH 中的 ffmpeg，第一个能成功启动的胜出。
    """

    def __init__(
        self,
        config: StreamConfig,
        popen: Optional[PopenFactory] = None,
        which: Optional[Callable[[str], Optional[str]]] = None,
    ):
        """初始化 FFmpeg 运行器

        Args:
            config: 转码配置
            popen: 进程创建函数，默认 subprocess.Popen（测试时替换）
            which: PATH 查找函数，默认 shutil.which
        """
        self.config = config
        self._popen = popen or subprocess.Popen
        self._which = which or shutil.which

    def get_executable_candidates(self) -> List[str]:
        """获取按优先级排列的 ffmpeg 候选路径

        Returns:
            去重后的候选路径列表
        """
        name = self.config.ffmpeg_name
        if os.name == "nt" and not name.lower().endswith(".exe"):
            name += ".exe"

        candidates = []
        if self.config.ffmpeg_path:
            candidates.append(self.config.ffmpeg_path)
        else:
            candidates.append(os.path.join(BUNDLED_BIN_DIR, name))

        candidates.append(self._which(self.config.ffmpeg_name) or self.config.ffmpeg_name)

        unique = []
        for candidate in candidates:
            if candidate and candidate not in unique:
                unique.append(candidate)
        return unique

    def build_arguments(self, source_url: str, manifest_path: str, segment_pattern: str) -> List[str]:
        """构建 FFmpeg 参数（不含可执行文件本身）

        Args:
            source_url: 直播源地址
            manifest_path: m3u8 输出路径
            segment_pattern: 切片文件名模式

        Returns:
            参数列表
        """
        args = [
            "-nostdin",
            "-hide_banner",
            "-loglevel", self.config.loglevel,
            # 重新生成时间戳，丢弃损坏的包
            "-fflags", "+genpts+discardcorrupt",
        ]

        args.extend(self._get_reconnect_params(source_url))

        args.extend(["-i", source_url])

        # 视频直接复制，音频统一转码
        args.extend(["-c:v", "copy"])
        args.extend(self._get_audio_params())

        args.extend(self._get_hls_params(segment_pattern))

        args.extend(["-y", manifest_path])
        return args

    def build_command(self, executable: str, source_url: str, manifest_path: str, segment_pattern: str) -> List[str]:
        """构建完整命令"""
        return [executable] + self.build_arguments(source_url, manifest_path, segment_pattern)

    def _get_reconnect_params(self, source_url: str) -> List[str]:
        """断线自动重连参数，仅对 HTTP(S) 输入有效

        Args:
            source_url: 直播源地址

        Returns:
            重连参数列表
        """
        scheme = urlsplit(source_url).scheme.lower()
        if scheme not in RECONNECT_SCHEMES:
            return []
        return [
            "-reconnect", "1",
            "-reconnect_streamed", "1",
            "-reconnect_on_network_error", "1",
            "-reconnect_delay_max", str(self.config.reconnect_delay_max),
        ]

    def _get_audio_params(self) -> List[str]:
        return [
            "-c:a", self.config.audio_codec,
            "-ar", str(self.config.audio_sample_rate),
            "-b:a", self.config.audio_bitrate,
            "-ac", str(self.config.audio_channels),
        ]

    def _get_hls_params(self, segment_pattern: str) -> List[str]:
        """获取 HLS 输出参数

        滚动窗口：播放列表只保留 list_size 个切片，旧切片由 FFmpeg 自动删除。
        """
        return [
            "-f", "hls",
            "-hls_time", str(self.config.segment_duration),
            "-hls_list_size", str(self.config.list_size),
            "-hls_flags", "delete_segments",
            "-start_number", "0",
            "-hls_segment_filename", segment_pattern,
        ]

    def start_process(self, arguments: List[str]) -> subprocess.Popen:
        """按候选顺序启动 FFmpeg 进程

        标准输入关闭，标准输出丢弃，标准错误通过管道交给调用方读取。

        Args:
            arguments: FFmpeg 参数（不含可执行文件）

        Returns:
            subprocess.Popen 对象

        Raises:
            TranscoderNotFoundError: 所有候选都无法启动
        """
        kwargs = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.PIPE,
        }
        if os.name == "nt":
            kwargs["creationflags"] = getattr(subprocess, "CREATE_NO_WINDOW", 0)

        failures = []
        for executable in self.get_executable_candidates():
            command = [executable] + list(arguments)
            try:
                process = self._popen(command, **kwargs)
            except OSError as e:
                logger.warning(f"FFmpeg candidate {executable} failed to start: {e}")
                failures.append(f"{executable}: {e.strerror or e}")
                continue

            logger.info(f"Started FFmpeg process with PID {process.pid}: {self.get_command_line_string(command)}")
            return process

        raise TranscoderNotFoundError(
            "FFmpeg executable not found",
            detail="; ".join(failures) or None,
        )

    def get_command_line_string(self, command: List[str]) -> str:
        """获取命令行字符串（用于日志记录）

        对 URL 中的用户名密码进行脱敏处理。
        """
        sanitized = []
        for i, arg in enumerate(command):
            if i > 0 and command[i - 1] == "-i":
                sanitized.append(sanitize_url(arg))
            else:
                sanitized.append(arg)
        return " ".join(sanitized)


def sanitize_url(url: str) -> str:
    """隐藏 URL 中的认证信息"""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if not parts.username and not parts.password:
        return url
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"***@{host}", parts.path, parts.query, parts.fragment))


def get_ffmpeg_runner(config: StreamConfig) -> FFmpegRunner:
    """获取 FFmpeg 运行器实例

    Args:
        config: 转码配置

    Returns:
        FFmpegRunner 实例
    """
    return FFmpegRunner(config)
