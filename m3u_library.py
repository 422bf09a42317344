#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import re
import logging
import requests
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

# 缺少元数据时的默认值
DEFAULT_CHANNEL_NAME = "Bilinmeyen"
DEFAULT_GROUP = "Diger"

NAME_RE = re.compile(r'tvg-name="([^"]*)"')
LOGO_RE = re.compile(r'tvg-logo="([^"]*)"')
GROUP_RE = re.compile(r'group-title="([^"]*)"')


class PlaylistFetchError(Exception):
    """下载M3U播放列表失败（网络错误、超时或非2xx状态码）"""


@dataclass
class Channel:
    """M3U中的一个频道条目"""
    id: int
    name: str
    logo: str
    group: str
    url: str

    def to_dict(self):
        return asdict(self)


def parse_m3u(content: str) -> List[Channel]:
    """解析M3U文本

    两行一组：#EXTINF 元数据行之后的第一个非注释行就是播放地址。
    没有前置元数据的地址行会被丢弃。

    Args:
        content: 播放列表原始文本

    Returns:
        list: 按出现顺序排列的频道列表
    """
    channels: List[Channel] = []
    current_info = None

    for raw_line in (content or "").splitlines():
        line = raw_line.strip()

        if line.startswith("#EXTINF:"):
            name_match = NAME_RE.search(line)
            logo_match = LOGO_RE.search(line)
            group_match = GROUP_RE.search(line)

            tvg_name = name_match.group(1) if name_match else ""

            # 显示名称取最后一个逗号之后的内容
            comma_index = line.rfind(",")
            display_name = line[comma_index + 1:].strip() if comma_index > -1 else tvg_name

            current_info = (
                display_name or tvg_name,
                logo_match.group(1) if logo_match else "",
                group_match.group(1) if group_match else DEFAULT_GROUP,
            )
        elif line and not line.startswith("#"):
            if current_info is None:
                continue
            name, logo, group = current_info
            channels.append(Channel(
                id=len(channels),
                name=name or DEFAULT_CHANNEL_NAME,
                logo=logo,
                group=group,
                url=line,
            ))
            current_info = None

    return channels


def group_channels(channels: List[Channel]) -> Dict[str, List[Channel]]:
    """按分组整理频道，分组名排序"""
    categories: Dict[str, List[Channel]] = {}
    for channel in channels:
        categories.setdefault(channel.group, []).append(channel)
    return {group: categories[group] for group in sorted(categories)}


class M3uLibrary:
    """M3U播放列表获取与解析"""

    def __init__(self, timeout=120, connect_timeout=10, max_redirects=10,
                 user_agent="iptv-relay/1.0", session: Optional[requests.Session] = None):
        """初始化

        Args:
            timeout: 读取超时（秒）
            connect_timeout: 连接超时（秒）
            max_redirects: 最大重定向次数
            user_agent: 请求使用的 User-Agent
            session: 可选的 requests.Session
        """
        self.timeout = (connect_timeout, timeout)
        self.session = session or requests.Session()
        self.session.max_redirects = max_redirects
        self.session.headers.update({"User-Agent": user_agent})
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_app_config(cls, app_config: dict, session: Optional[requests.Session] = None) -> 'M3uLibrary':
        section = app_config.get("playlist", {}) or {}
        return cls(
            timeout=float(section.get("timeout", 120) or 120),
            connect_timeout=float(section.get("connect_timeout", 10) or 10),
            max_redirects=int(section.get("max_redirects", 10) or 10),
            user_agent=section.get("user_agent") or "iptv-relay/1.0",
            session=session,
        )

    def fetch(self, url: str) -> str:
        """下载播放列表文本

        Args:
            url: 播放列表地址

        Returns:
            str: 播放列表文本

        Raises:
            PlaylistFetchError: 下载失败
        """
        self.logger.info(f"Fetching M3U from: {url}")
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise PlaylistFetchError(f"Failed to fetch: {e}") from e

        if not 200 <= response.status_code < 300:
            raise PlaylistFetchError(f"Failed to fetch: HTTP {response.status_code}")

        content = response.content.decode("utf-8-sig", errors="replace")
        self.logger.info(f"Content size: {len(content)} bytes")
        return content

    def load(self, url: str) -> List[Channel]:
        """下载并解析播放列表"""
        channels = parse_m3u(self.fetch(url))
        self.logger.info(f"Parsed {len(channels)} channels")
        return channels
