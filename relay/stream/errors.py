"""直播转码错误类型。"""

from __future__ import annotations

from typing import Optional


class StreamError(Exception):
    """转码会话相关错误的基类，code 用于 API 响应。"""

    code = "stream_error"
    status_code = 500

    def __init__(self, message: str, *, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        result = {"success": False, "error": self.message, "error_code": self.code}
        if self.detail:
            result["detail"] = self.detail
        return result


class InvalidSourceError(StreamError):
    """源地址为空或格式不可用。"""

    code = "invalid_source"
    status_code = 400


class TranscoderNotFoundError(StreamError):
    """所有候选 ffmpeg 可执行文件都无法启动。"""

    code = "transcoder_not_found"
    status_code = 500


class SourceUnreachableError(StreamError):
    """ffmpeg 在产生任何输出之前退出，通常是源地址无法访问。"""

    code = "source_unreachable"
    status_code = 502


__all__ = [
    "StreamError",
    "InvalidSourceError",
    "TranscoderNotFoundError",
    "SourceUnreachableError",
]
