"""
直播转码配置模块

定义单会话 HLS 转码、本地分发服务与就绪检测相关的配置参数和默认值。
"""

import os
import tempfile
from typing import Optional
from dataclasses import dataclass


def _default_work_dir() -> str:
    """工作目录默认放在系统临时目录下的专用子目录"""
    return os.path.join(tempfile.gettempdir(), "iptv-relay-hls")


@dataclass
class StreamConfig:
    """直播转码配置

    从全局配置中读取 stream 段落，提供默认值。
    """

    # 本地分发服务
    host: str = "127.0.0.1"
    port: int = 18095
    url_prefix: str = "/hls"

    # 工作目录（整个程序生命周期内固定）
    work_dir: str = ""

    # FFmpeg 可执行文件：先尝试随包附带的路径，再回退到 PATH 中的 ffmpeg
    ffmpeg_path: str = ""
    ffmpeg_name: str = "ffmpeg"

    # 输出文件命名
    manifest_name: str = "stream.m3u8"
    segment_pattern: str = "segment%03d.ts"
    segment_extension: str = ".ts"

    # HLS 参数
    segment_duration: int = 4  # 切片时长（秒）
    list_size: int = 6  # 播放列表中保留的切片数量（滚动窗口）

    # 音频编码参数（视频流直接复制）
    audio_codec: str = "aac"
    audio_sample_rate: int = 44100
    audio_bitrate: str = "128k"
    audio_channels: int = 2

    # FFmpeg 日志级别
    loglevel: str = "error"

    # 断线重连最大延迟（秒）
    reconnect_delay_max: int = 5

    # 就绪检测
    ready_max_attempts: int = 30
    ready_interval: float = 0.5

    # 时序参数（秒）
    listener_delay: float = 0.3  # 启动分发服务后等待监听就绪
    stop_settle_delay: float = 0.5  # 停止进程后等待系统释放文件句柄
    terminate_timeout: float = 5.0  # 等待进程退出的超时，超时后强制 kill

    # 是否清理遗留的 ffmpeg 进程（按进程名 + 工作目录标记匹配）
    kill_orphans: bool = True

    def __post_init__(self):
        if not self.work_dir:
            self.work_dir = _default_work_dir()
        # FFmpeg 命令行与遗留进程匹配都使用绝对路径
        self.work_dir = os.path.abspath(self.work_dir)
        if not self.url_prefix.startswith("/"):
            self.url_prefix = "/" + self.url_prefix
        self.url_prefix = self.url_prefix.rstrip("/") or "/hls"

    @classmethod
    def from_app_config(cls, app_config: dict) -> 'StreamConfig':
        """从应用配置创建 StreamConfig

        Args:
            app_config: 全局配置字典

        Returns:
            StreamConfig 实例
        """
        stream_config = app_config.get("stream", {}) or {}

        config = cls()

        # 分发服务
        if "host" in stream_config:
            config.host = str(stream_config["host"] or config.host)
        if "port" in stream_config:
            config.port = int(stream_config["port"] or config.port)
        if "url_prefix" in stream_config:
            prefix = str(stream_config["url_prefix"] or "/hls")
            config.url_prefix = ("/" + prefix.strip("/")) if prefix.strip("/") else "/hls"

        # 工作目录与可执行文件
        if stream_config.get("work_dir"):
            config.work_dir = stream_config["work_dir"]
        if "ffmpeg_path" in stream_config:
            config.ffmpeg_path = stream_config["ffmpeg_path"] or ""

        # 输出文件命名
        if stream_config.get("manifest_name"):
            config.manifest_name = stream_config["manifest_name"]
        if stream_config.get("segment_pattern"):
            config.segment_pattern = stream_config["segment_pattern"]
            config.segment_extension = os.path.splitext(config.segment_pattern)[1] or ".ts"

        # HLS 参数
        if "segment_duration" in stream_config:
            config.segment_duration = int(stream_config["segment_duration"] or 4)
        if "list_size" in stream_config:
            config.list_size = int(stream_config["list_size"] or 6)

        # 音频编码参数
        if "audio_codec" in stream_config:
            config.audio_codec = stream_config["audio_codec"] or "aac"
        if "audio_sample_rate" in stream_config:
            config.audio_sample_rate = int(stream_config["audio_sample_rate"] or 44100)
        if "audio_bitrate" in stream_config:
            config.audio_bitrate = stream_config["audio_bitrate"] or "128k"
        if "audio_channels" in stream_config:
            config.audio_channels = int(stream_config["audio_channels"] or 2)

        if "loglevel" in stream_config:
            config.loglevel = stream_config["loglevel"]
        if "reconnect_delay_max" in stream_config:
            config.reconnect_delay_max = int(stream_config["reconnect_delay_max"] or 5)

        # 就绪检测与时序
        if "ready_max_attempts" in stream_config:
            config.ready_max_attempts = int(stream_config["ready_max_attempts"] or 30)
        if "ready_interval" in stream_config:
            config.ready_interval = float(stream_config["ready_interval"] or 0.5)
        if "listener_delay" in stream_config:
            config.listener_delay = float(stream_config["listener_delay"] or 0)
        if "stop_settle_delay" in stream_config:
            config.stop_settle_delay = float(stream_config["stop_settle_delay"] or 0)
        if "terminate_timeout" in stream_config:
            config.terminate_timeout = float(stream_config["terminate_timeout"] or 5.0)

        if "kill_orphans" in stream_config:
            config.kill_orphans = bool(stream_config["kill_orphans"])

        # 环境变量优先
        if os.environ.get("RELAY_HLS_PORT"):
            config.port = int(os.environ["RELAY_HLS_PORT"])
        if os.environ.get("RELAY_WORK_DIR"):
            config.work_dir = os.environ["RELAY_WORK_DIR"]

        if os.environ.get("FFMPEG_PATH"):
            config.ffmpeg_path = os.environ["FFMPEG_PATH"]

        config.work_dir = os.path.abspath(config.work_dir)

        return config

    def get_manifest_path(self) -> str:
        """获取 m3u8 播放列表文件路径

        Returns:
            工作目录下的 m3u8 路径
        """
        return os.path.join(self.work_dir, self.manifest_name)

    def get_segment_pattern(self) -> str:
        """获取切片文件名模式（用于 FFmpeg）

        Returns:
            切片文件名模式，如 "/tmp/iptv-relay-hls/segment%03d.ts"
        """
        return os.path.join(self.work_dir, self.segment_pattern)

    def get_base_url(self, port: Optional[int] = None) -> str:
        """获取本地分发服务的根地址

        Args:
            port: 实际监听的端口，缺省使用配置的端口
        """
        return f"http://{self.host}:{port or self.port}"

    def get_playback_url(self, filename: Optional[str] = None, port: Optional[int] = None) -> str:
        """获取播放地址（默认指向 m3u8 播放列表）

        Args:
            filename: 工作目录中的文件名，缺省为播放列表
            port: 实际监听的端口，缺省使用配置的端口

        Returns:
            完整的回环地址 URL
        """
        filename = filename or self.manifest_name
        return f"{self.get_base_url(port)}{self.url_prefix}/{filename}"

    def get_ready_timeout(self) -> float:
        """就绪检测的最长等待时间（秒）"""
        return self.ready_max_attempts * self.ready_interval


def get_stream_config(app_config: dict) -> StreamConfig:
    """获取直播转码配置的便捷函数

    Args:
        app_config: 全局配置字典

    Returns:
        StreamConfig 实例
    """
    return StreamConfig.from_app_config(app_config)
