#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import os
import json
import atexit
import logging
import traceback
from logging.handlers import TimedRotatingFileHandler

from flask import Flask, request, jsonify
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from m3u_library import M3uLibrary, PlaylistFetchError, group_channels
from relay.stream import get_session_controller, get_stream_config
from relay.stream.api import register_routes as register_stream_routes
from relay.subtitles import SubtitleClient, SubtitleServiceError, get_subtitle_client

# Configuration file path
CONFIG_FILE = "config/config.json"

DEFAULT_CONFIG = {
    "server": {
        "host": "127.0.0.1",
        "port": 8080
    },
    "stream": {
        "host": "127.0.0.1",
        "port": 18095,
        "url_prefix": "/hls",
        "work_dir": "",
        "ffmpeg_path": "",
        "segment_duration": 4,
        "list_size": 6,
        "audio_codec": "aac",
        "audio_sample_rate": 44100,
        "audio_bitrate": "128k",
        "audio_channels": 2,
        "loglevel": "error",
        "reconnect_delay_max": 5,
        "ready_max_attempts": 30,
        "ready_interval": 0.5,
        "kill_orphans": True
    },
    "playlist": {
        "timeout": 120,
        "connect_timeout": 10,
        "max_redirects": 10
    },
    "subtitles": {
        "api_base_url": "https://api.opensubtitles.com/api/v1",
        "api_key": "",
        "language": "",
        "max_results": 10
    }
}


class SegmentRequestFilter(logging.Filter):
    """过滤掉切片请求相关的详细日志"""
    def filter(self, record):
        message = record.getMessage()
        if any(x in message for x in ['/hls/', '.ts HTTP', 'FFMPEG (']):
            return record.levelno >= logging.WARNING
        return True


def setup_logging(log_dir='logs'):
    """Configure console and rotating file logging"""
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    # 配置较少日志输出的模块
    for module in ['urllib3', 'requests', 'werkzeug', 'chardet.charsetprober']:
        logging.getLogger(module).setLevel(logging.WARNING)

    root_logger = logging.getLogger()
    root_logger.addFilter(SegmentRequestFilter())

    os.makedirs(log_dir, exist_ok=True)

    # 添加按日期滚动的文件处理器
    file_handler = TimedRotatingFileHandler(
        os.path.join(log_dir, 'webserver.log'),
        when='midnight',
        interval=1,
        backupCount=3  # 保留3天日志
    )
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
    file_handler.setLevel(logging.INFO)
    file_handler.addFilter(SegmentRequestFilter())
    root_logger.addHandler(file_handler)


def _merge_config(base, override):
    """Merge nested config sections, override wins"""
    merged = dict(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_file=CONFIG_FILE):
    """Load configuration file, creating it with defaults if missing"""
    config = json.loads(json.dumps(DEFAULT_CONFIG))
    try:
        if os.path.exists(config_file):
            with open(config_file, 'r', encoding='utf-8') as f:
                loaded_config = json.load(f)
                config = _merge_config(config, loaded_config)
                logging.info(f"Loaded configuration file: {config_file}")
        else:
            # Create config directory if it doesn't exist
            os.makedirs(os.path.dirname(config_file) or '.', exist_ok=True)
            # Save default config
            with open(config_file, 'w', encoding='utf-8') as f:
                json.dump(config, f, ensure_ascii=False, indent=2)
                logging.info(f"Created default configuration file: {config_file}")
    except (OSError, ValueError) as e:
        logging.error(f"Failed to load configuration file: {str(e)}")

    # 环境变量优先
    if os.environ.get("RELAY_PORT"):
        config["server"]["port"] = int(os.environ["RELAY_PORT"])

    return config


def create_app(app_config=None, controller=None, m3u_library=None, subtitle_client=None):
    """Build the Flask command API (composition root)

    Args:
        app_config: 全局配置字典，缺省时从配置文件读取
        controller: SessionController 实例
        m3u_library: M3uLibrary 实例
        subtitle_client: SubtitleClient 实例

    Returns:
        Flask: 已注册全部路由的应用
    """
    if app_config is None:
        app_config = load_config()

    if controller is None:
        controller = get_session_controller(get_stream_config(app_config))
    if m3u_library is None:
        m3u_library = M3uLibrary.from_app_config(app_config)
    if subtitle_client is None:
        subtitle_client = get_subtitle_client(app_config)

    app = Flask(__name__)
    CORS(app)  # Enable CORS

    app.config['RELAY_CONFIG'] = app_config
    app.extensions['stream_controller'] = controller

    register_stream_routes(app, controller)
    _register_playlist_routes(app, m3u_library)
    _register_subtitle_routes(app, subtitle_client)
    _register_error_handlers(app)

    @app.route('/', methods=['GET'])
    def index():
        """Service summary"""
        return jsonify({
            "success": True,
            "service": "iptv-relay",
            "stream": controller.status(),
        })

    return app


def _register_playlist_routes(app, m3u_library: M3uLibrary):

    @app.route('/api/playlist/load', methods=['POST'])
    def load_playlist():
        """下载并解析M3U播放列表

        请求体：
        {
            "url": "http://host/playlist.m3u"
        }

        Returns:
            JSON: 频道列表和分组信息
        """
        data = request.get_json(silent=True) or {}
        url = (data.get('url') or '').strip()
        if not url:
            return jsonify({"success": False, "error": "Playlist URL is required"}), 400

        try:
            channels = m3u_library.load(url)
        except PlaylistFetchError as e:
            app.logger.error(f"M3U load failed: {e}")
            return jsonify({"success": False, "error": str(e)}), 502

        categories = group_channels(channels)
        return jsonify({
            "success": True,
            "channels": [channel.to_dict() for channel in channels],
            "categories": {group: len(items) for group, items in categories.items()},
            "count": len(channels),
        })


def _register_subtitle_routes(app, subtitle_client: SubtitleClient):

    @app.route('/api/subtitles/search', methods=['GET'])
    def search_subtitles():
        """搜索字幕

        Returns:
            JSON: 字幕候选列表
        """
        query = request.args.get('q', '').strip()
        if not query:
            return jsonify({"success": False, "error": "Query is required"}), 400

        try:
            results = subtitle_client.search(query)
        except SubtitleServiceError as e:
            return jsonify({"success": False, "error": str(e)}), 502

        return jsonify({
            "success": True,
            "results": [result.to_dict() for result in results],
        })

    @app.route('/api/subtitles/download', methods=['POST'])
    def download_subtitle():
        """下载字幕并返回文本内容

        请求体：
        {
            "file_id": "123456"
        }
        """
        data = request.get_json(silent=True) or {}
        file_id = str(data.get('file_id') or '').strip()
        if not file_id:
            return jsonify({"success": False, "error": "file_id is required"}), 400

        try:
            content = subtitle_client.download(file_id)
        except SubtitleServiceError as e:
            return jsonify({"success": False, "error": str(e)}), 502

        return jsonify({"success": True, "content": content})


def _register_error_handlers(app):

    @app.errorhandler(404)
    def page_not_found(e):
        """Handle 404 Not Found errors"""
        return jsonify({"success": False, "error": "Not found"}), 404

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify({"success": False, "error": "Method not allowed"}), 405

    @app.errorhandler(500)
    def internal_server_error(e):
        """Handle 500 Internal Server Error"""
        return jsonify({"success": False, "error": "Internal server error"}), 500

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle uncaught exceptions"""
        if isinstance(e, HTTPException):
            return jsonify({"success": False, "error": e.description}), e.code
        app.logger.error(f"Uncaught exception: {str(e)}")
        app.logger.error(traceback.format_exc())
        return jsonify({"success": False, "error": str(e)}), 500


def main():
    setup_logging()
    app_config = load_config()
    app = create_app(app_config)

    controller = app.extensions['stream_controller']
    atexit.register(controller.shutdown)

    server_config = app_config.get("server", {})
    app.run(
        host=server_config.get("host", "127.0.0.1"),
        port=int(server_config.get("port", 8080)),
        debug=False,
        threaded=True,
    )


# Start the server
if __name__ == '__main__':
    main()
