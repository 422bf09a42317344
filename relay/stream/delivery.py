"""
本地 HLS 分发服务

在固定的回环地址和端口上以只读方式提供工作目录中的 m3u8 和切片文件。
播放器不是浏览器页面，因此允许任意来源、方法和请求头的跨域访问。
"""

import os
import logging
import threading
from typing import Callable, Optional

from flask import Flask, send_from_directory
from flask_cors import CORS
from werkzeug.serving import make_server

from .config import StreamConfig

logger = logging.getLogger(__name__)

MIMETYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".m4s": "video/iso.segment",
    ".mp4": "video/mp4",
    ".aac": "audio/aac",
}


def create_delivery_app(work_dir: str, url_prefix: str = "/hls") -> Flask:
    """创建只读静态文件服务应用

    Args:
        work_dir: 工作目录
        url_prefix: URL 路径前缀

    Returns:
        Flask 应用实例
    """
    app = Flask(__name__)
    CORS(
        app,
        resources={r"/*": {"origins": "*"}},
        send_wildcard=True,
        methods=["GET", "HEAD", "POST", "OPTIONS", "PUT", "PATCH", "DELETE"],
        allow_headers="*",
        expose_headers="*",
    )

    @app.route(f"{url_prefix}/<path:filename>", methods=["GET", "HEAD"])
    def serve_hls_file(filename):
        """返回工作目录中的文件，不存在时 404"""
        mimetype = MIMETYPES.get(os.path.splitext(filename)[1].lower())
        response = send_from_directory(work_dir, filename, mimetype=mimetype, max_age=0)
        response.headers["Cache-Control"] = "no-cache"
        return response

    return app


class DeliveryServer:
    """HLS 分发服务

    一个 SessionController 只拥有一个实例，进程生命周期内最多绑定一次监听端口。
    启动标志在锁内检查并设置，并发调用不会绑定两个监听。
    """

    def __init__(self, config: StreamConfig, server_factory: Optional[Callable] = None):
        """初始化分发服务

        Args:
            config: 转码配置
            server_factory: 创建 WSGI 服务器的函数，默认 werkzeug.serving.make_server
        """
        self.config = config
        self.app = create_delivery_app(config.work_dir, config.url_prefix)
        self._server_factory = server_factory or make_server
        self._lock = threading.Lock()
        self._started = False
        self._server = None
        self._thread: Optional[threading.Thread] = None

    @property
    def is_started(self) -> bool:
        return self._started

    @property
    def is_serving(self) -> bool:
        return self._server is not None

    @property
    def bound_port(self) -> Optional[int]:
        """实际监听的端口（配置为 0 时由系统分配）"""
        server = self._server
        if server is None:
            return None
        address = getattr(server, "server_address", None)
        return address[1] if address else getattr(server, "port", self.config.port)

    def ensure_started(self) -> bool:
        """确保分发服务已启动（幂等）

        绑定失败（端口被其他程序占用）只记录日志，启动标志保持已设置。

        Returns:
            本次调用是否实际启动了监听
        """
        with self._lock:
            if self._started:
                return False
            self._started = True

            try:
                server = self._server_factory(
                    self.config.host,
                    self.config.port,
                    self.app,
                    threaded=True,
                )
            except OSError as e:
                logger.error(f"Failed to bind HLS delivery server on {self.config.host}:{self.config.port}: {e}")
                return False

            self._server = server
            self._thread = threading.Thread(
                target=server.serve_forever,
                daemon=True,
                name="HLSDeliveryServer",
            )
            self._thread.start()

        logger.info(f"HLS delivery server listening on {self.config.get_base_url(self.bound_port)}{self.config.url_prefix}/ -> {self.config.work_dir}")
        return True

    def shutdown(self):
        """关闭监听（仅用于程序退出和测试），不会重新允许绑定"""
        with self._lock:
            server, self._server = self._server, None
            thread, self._thread = self._thread, None

        if server is None:
            return
        server.shutdown()
        if thread is not None:
            thread.join(timeout=5)
        server_close = getattr(server, "server_close", None)
        if server_close is not None:
            server_close()
        logger.info("HLS delivery server stopped")
