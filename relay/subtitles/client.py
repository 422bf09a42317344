"""OpenSubtitles 兼容接口的字幕搜索与下载客户端。"""

from __future__ import annotations

import gzip
import io
import logging
import os
import zipfile
import zlib
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

import chardet
import requests

SUBTITLE_EXTENSIONS = (".srt", ".vtt", ".ass", ".ssa", ".sub")


class SubtitleServiceError(Exception):
    """字幕服务请求失败，消息原样返回给调用方。"""


@dataclass
class SubtitleConfig:
    """
    字幕服务配置

    优先从环境变量读取：
    - OPENSUBTITLES_API_URL，默认: https://api.opensubtitles.com/api/v1
    - OPENSUBTITLES_API_KEY
    - OPENSUBTITLES_USER_AGENT
    """

    api_base_url: str = os.getenv("OPENSUBTITLES_API_URL", "https://api.opensubtitles.com/api/v1")
    api_key: str = os.getenv("OPENSUBTITLES_API_KEY", "")
    user_agent: str = os.getenv("OPENSUBTITLES_USER_AGENT", "iptv-relay v1.0")
    language: str = ""
    timeout: float = 15.0
    connect_timeout: float = 10.0
    max_redirects: int = 5
    max_results: int = 10

    @classmethod
    def from_dict(cls, config_section: Optional[Dict[str, Any]]) -> "SubtitleConfig":
        """
        根据 config.json 中的 subtitles 段落生成配置。

        {
          "subtitles": {
            "api_base_url": "https://api.opensubtitles.com/api/v1",
            "api_key": "...",
            "language": "tr,en",
            "max_results": 10
          }
        }
        """
        config = cls()
        if not isinstance(config_section, dict):
            return config

        api_base_url = str(config_section.get("api_base_url") or "").strip()
        if api_base_url:
            config.api_base_url = api_base_url

        api_key = str(config_section.get("api_key") or "").strip()
        if api_key and not os.getenv("OPENSUBTITLES_API_KEY"):
            config.api_key = api_key

        user_agent = str(config_section.get("user_agent") or "").strip()
        if user_agent:
            config.user_agent = user_agent

        config.language = str(config_section.get("language") or "").strip()

        for key in ("timeout", "connect_timeout"):
            value = config_section.get(key)
            if value is not None:
                try:
                    setattr(config, key, float(value))
                except (TypeError, ValueError):
                    pass

        for key in ("max_redirects", "max_results"):
            value = config_section.get(key)
            if value is not None:
                try:
                    setattr(config, key, int(value))
                except (TypeError, ValueError):
                    pass

        return config


@dataclass
class SubtitleResult:
    """一条字幕搜索结果"""

    file_id: str
    language: str
    release: str
    file_name: str = ""
    download_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class SubtitleClient:
    """字幕搜索与下载客户端。"""

    def __init__(
        self,
        config: Optional[SubtitleConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or SubtitleConfig()
        self._base_url = self.config.api_base_url.rstrip("/")
        self._timeout = (self.config.connect_timeout, self.config.timeout)
        self._session = session or requests.Session()
        self._session.max_redirects = self.config.max_redirects
        self._logger = logger or logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # 对外方法
    # ------------------------------------------------------------------
    def search(self, query: str) -> List[SubtitleResult]:
        """按关键字搜索字幕，最多返回 max_results 条。"""
        query = (query or "").strip()
        if not query:
            return []

        params = {"query": query}
        if self.config.language:
            params["languages"] = self.config.language

        data = self._request_json("GET", "subtitles", params=params)

        results: List[SubtitleResult] = []
        for item in data.get("data") or []:
            result = self._to_result(item)
            if result is None:
                continue
            results.append(result)
            if len(results) >= self.config.max_results:
                break

        self._logger.info("Subtitle search '%s' returned %d result(s)", query, len(results))
        return results

    def download(self, file_id: str) -> str:
        """下载字幕文件并返回文本内容，自动解开 gzip / zip。"""
        if not str(file_id or "").strip():
            raise SubtitleServiceError("Subtitle file id is required")

        data = self._request_json("POST", "download", json={"file_id": _coerce_file_id(file_id)})
        link = data.get("link")
        if not link:
            raise SubtitleServiceError(data.get("message") or "Subtitle download link missing")

        try:
            response = self._session.get(link, timeout=self._timeout)
        except requests.RequestException as exc:
            raise SubtitleServiceError(f"Subtitle download failed: {exc}") from exc
        if not 200 <= response.status_code < 300:
            raise SubtitleServiceError(f"Subtitle download failed: HTTP {response.status_code}")

        return decode_subtitle(unpack_subtitle(response.content))

    # ------------------------------------------------------------------
    # 内部工具方法
    # ------------------------------------------------------------------
    def _request(self, method: str, endpoint: str, **kwargs) -> requests.Response:
        url = f"{self._base_url}/{endpoint.lstrip('/')}"
        headers = {
            "Api-Key": self.config.api_key,
            "User-Agent": self.config.user_agent,
            "Accept": "application/json",
        }
        try:
            response = self._session.request(method, url, headers=headers, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            self._logger.error("Subtitle API request failed: %s", exc)
            raise SubtitleServiceError(f"Subtitle API request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            self._logger.warning("Subtitle API error: %s %s (HTTP %s)", method, url, response.status_code)
            raise SubtitleServiceError(f"Subtitle API error: HTTP {response.status_code}")
        return response

    def _request_json(self, method: str, endpoint: str, **kwargs) -> Dict[str, Any]:
        response = self._request(method, endpoint, **kwargs)
        try:
            data = response.json()
        except ValueError as exc:
            self._logger.warning("Subtitle API returned a non-JSON body: %s %s", method, endpoint)
            raise SubtitleServiceError("Subtitle API returned an invalid response") from exc
        if not isinstance(data, dict):
            raise SubtitleServiceError("Subtitle API returned an unexpected response")
        return data

    @staticmethod
    def _to_result(item: Dict[str, Any]) -> Optional[SubtitleResult]:
        if not isinstance(item, dict):
            return None
        attributes = item.get("attributes") or {}
        files = attributes.get("files") or []
        if not files or files[0].get("file_id") is None:
            return None
        first = files[0]
        return SubtitleResult(
            file_id=str(first["file_id"]),
            language=attributes.get("language") or "",
            release=attributes.get("release") or first.get("file_name") or "",
            file_name=first.get("file_name") or "",
            download_count=int(attributes.get("download_count") or 0),
        )


def _coerce_file_id(file_id):
    text = str(file_id).strip()
    return int(text) if text.isdigit() else text


def unpack_subtitle(payload: bytes) -> bytes:
    """如果是 gzip 或 zip 压缩包则解压，返回字幕文件原始字节。"""
    try:
        if payload[:2] == b"\x1f\x8b":
            return gzip.decompress(payload)

        if payload[:4] == b"PK\x03\x04":
            with zipfile.ZipFile(io.BytesIO(payload)) as archive:
                names = [name for name in archive.namelist() if not name.endswith("/")]
                if not names:
                    raise SubtitleServiceError("Subtitle archive is empty")
                preferred = [name for name in names if name.lower().endswith(SUBTITLE_EXTENSIONS)]
                return archive.read((preferred or names)[0])
    except (OSError, EOFError, zlib.error, zipfile.BadZipFile) as exc:
        raise SubtitleServiceError(f"Subtitle archive is corrupt: {exc}") from exc

    return payload


def decode_subtitle(raw: bytes) -> str:
    """解码字幕文本：优先 UTF-8，其次 chardet 检测结果，最后 latin-1。"""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        pass

    detected = chardet.detect(raw[:65536]).get("encoding")
    if detected:
        try:
            return raw.decode(detected)
        except (LookupError, UnicodeDecodeError):
            pass
    return raw.decode("latin-1")


__all__ = [
    "SubtitleClient",
    "SubtitleConfig",
    "SubtitleResult",
    "SubtitleServiceError",
    "unpack_subtitle",
    "decode_subtitle",
]
