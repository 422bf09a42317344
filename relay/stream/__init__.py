"""
直播转码服务模块

把无法直接播放的直播源实时转成 HLS，并通过本地回环地址提供给播放器。

核心特性：
- 同一时刻只运行一个 FFmpeg 进程，新请求优先
- 固定的工作目录，每次启动前清空
- 视频直接复制，音频统一转 AAC，滚动窗口切片
- 本地静态文件服务，允许任意跨域访问
- 有上限的就绪检测，超时也返回播放地址
"""

from .config import StreamConfig, get_stream_config
from .errors import StreamError, InvalidSourceError, TranscoderNotFoundError, SourceUnreachableError
from .session import StreamSession, SessionPhase
from .workspace import WorkspaceManager
from .ffmpeg import FFmpegRunner
from .supervisor import ProcessSupervisor
from .readiness import ReadinessDetector
from .delivery import DeliveryServer, create_delivery_app
from .controller import SessionController, get_session_controller

__all__ = [
    'StreamConfig',
    'get_stream_config',
    'StreamError',
    'InvalidSourceError',
    'TranscoderNotFoundError',
    'SourceUnreachableError',
    'StreamSession',
    'SessionPhase',
    'WorkspaceManager',
    'FFmpegRunner',
    'ProcessSupervisor',
    'ReadinessDetector',
    'DeliveryServer',
    'create_delivery_app',
    'SessionController',
    'get_session_controller',
]
