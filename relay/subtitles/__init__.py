"""字幕服务模块入口。"""

from __future__ import annotations

import logging
from typing import Optional

from .client import (
    SubtitleClient,
    SubtitleConfig,
    SubtitleResult,
    SubtitleServiceError,
    decode_subtitle,
    unpack_subtitle,
)

DEFAULT_SECTION = "subtitles"


def get_subtitle_client(config: dict, *, logger: Optional[logging.Logger] = None) -> SubtitleClient:
    """根据 config.json 返回字幕客户端。"""

    section = config.get(DEFAULT_SECTION, {}) if isinstance(config, dict) else {}
    subtitle_config = SubtitleConfig.from_dict(section)
    logger = logger or logging.getLogger("SubtitleService")
    if not subtitle_config.api_key:
        logger.warning("未配置字幕服务 API Key，搜索请求可能被拒绝")
    return SubtitleClient(subtitle_config, logger=logger)


__all__ = [
    "get_subtitle_client",
    "SubtitleClient",
    "SubtitleConfig",
    "SubtitleResult",
    "SubtitleServiceError",
    "decode_subtitle",
    "unpack_subtitle",
]
