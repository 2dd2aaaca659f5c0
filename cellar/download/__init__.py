"""下载模块

- downloadable.py: 瓶子 / 源码 / 瓶子清单 / 本地产物
- retryable.py: 重试与预解压包装
- queue.py: 去重的并发下载队列
- progress.py: rich 实时进度表
"""

from cellar.download.downloadable import (
    BottleDownload,
    BottleManifestDownload,
    Downloadable,
    LocalArtifact,
    SourceDownload,
    UrlDownload,
)
from cellar.download.queue import DownloadQueue
from cellar.download.retryable import POURED_MARKER, RetryableDownload, poured_marker

__all__ = [
    "Downloadable",
    "UrlDownload",
    "BottleDownload",
    "SourceDownload",
    "BottleManifestDownload",
    "LocalArtifact",
    "RetryableDownload",
    "DownloadQueue",
    "POURED_MARKER",
    "poured_marker",
]
