"""
HLS 工作目录管理

整个程序生命周期内只使用一个固定目录，FFmpeg 写入播放列表和切片，
本地分发服务从这里读取。每次启动新会话前、停止会话后清空目录。
"""

import os
import logging
from typing import List

from .config import StreamConfig

logger = logging.getLogger(__name__)


class WorkspaceManager:
    """工作目录管理器

    自身不做并发控制，由 SessionController 串行调用。
    """

    def __init__(self, config: StreamConfig):
        self.config = config

    @property
    def path(self) -> str:
        """工作目录路径"""
        return self.config.work_dir

    @property
    def manifest_path(self) -> str:
        return self.config.get_manifest_path()

    @property
    def segment_pattern(self) -> str:
        return self.config.get_segment_pattern()

    def prepare(self) -> int:
        """创建工作目录（幂等）并清除其中所有文件

        Returns:
            删除的文件数量
        """
        try:
            os.makedirs(self.path, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create workspace {self.path}: {e}")
            return 0
        return self.purge()

    def purge(self) -> int:
        """删除工作目录下的所有普通文件

        单个文件删除失败（被占用、已被删除）只记录日志，不中断整体操作。

        Returns:
            删除的文件数量
        """
        removed = 0
        if not os.path.isdir(self.path):
            return removed

        try:
            filenames = os.listdir(self.path)
        except OSError as e:
            logger.error(f"Failed to list workspace {self.path}: {e}")
            return removed

        for filename in filenames:
            file_path = os.path.join(self.path, filename)
            try:
                if os.path.isfile(file_path):
                    os.remove(file_path)
                    removed += 1
            except OSError as e:
                logger.warning(f"Failed to delete file {file_path}: {e}")

        if removed:
            logger.info(f"Purged {removed} file(s) from workspace {self.path}")
        return removed

    def list_files(self) -> List[str]:
        """列出工作目录下的文件名（已排序）"""
        try:
            return sorted(
                name for name in os.listdir(self.path)
                if os.path.isfile(os.path.join(self.path, name))
            )
        except OSError:
            return []

    def has_manifest(self) -> bool:
        """播放列表是否已生成"""
        return os.path.isfile(self.manifest_path)

    def has_segment(self) -> bool:
        """是否至少存在一个切片文件"""
        extension = self.config.segment_extension
        return any(name.endswith(extension) for name in self.list_files())
