"""
直播转码 API 端点

提供给前端的 startStream / stopStream 命令以及状态查询。
"""

from flask import jsonify, request
import logging

from .controller import SessionController
from .errors import StreamError

logger = logging.getLogger(__name__)


def register_routes(app, controller: SessionController):
    """注册直播转码 API 路由

    Args:
        app: Flask 应用实例
        controller: 由组合根创建的会话控制器
    """

    @app.route('/api/stream/start', methods=['POST'])
    def stream_start():
        """启动直播转码

        请求体：
        {
            "url": "http://host/live/channel.ts"
        }

        Returns:
            播放地址和会话状态 JSON
        """
        data = request.get_json(silent=True) or {}
        source_url = data.get('url') or request.args.get('url', '')

        try:
            playback_url = controller.start_session(source_url)
        except StreamError as e:
            return jsonify(e.to_dict()), e.status_code

        return jsonify({
            "success": True,
            "playback_url": playback_url,
            "session": controller.status(),
        })

    @app.route('/api/stream/stop', methods=['POST'])
    def stream_stop():
        """停止直播转码并清空工作目录

        Returns:
            操作结果 JSON
        """
        try:
            removed = controller.stop_session()
        except OSError as e:
            logger.error(f"Failed to stop stream session: {e}")
            return jsonify({"success": False, "error": str(e), "error_code": "stop_failed"}), 500

        return jsonify({
            "success": True,
            "message": "Stream stopped",
            "removed_files": removed,
        })

    @app.route('/api/stream/status', methods=['GET'])
    def stream_status():
        """获取当前会话状态

        Returns:
            会话状态 JSON
        """
        return jsonify({
            "success": True,
            "session": controller.status(),
        })
