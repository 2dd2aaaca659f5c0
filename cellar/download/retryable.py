"""带重试的下载包装

通过组合持有一个 Downloadable，只读字段全部转发，只覆盖 fetch:
- 可重试错误: DownloadError / ChecksumMismatchError / BottleManifestError（含超时）
- 第 n 次失败后等待 2**n 秒，重试前清理缓存；最终失败同样清理，不留半成品
- pour 为真且对象是瓶子时，下载后预解压到临时 Cellar 并放置 .poured 标记
"""

from __future__ import annotations

import logging
import shutil
import threading
import time
from pathlib import Path
from typing import Callable

from cellar.core.exceptions import DownloadError
from cellar.download.downloadable import BottleDownload, Downloadable

logger = logging.getLogger(__name__)

# ChecksumMismatchError 与 BottleManifestError 均为 DownloadError 子类
TRANSIENT_ERRORS = (DownloadError,)

POURED_MARKER = ".poured"


def poured_marker(keg: Path) -> Path:
    """预解压完成标记: 与 keg 目录同级的 <keg>.poured 文件"""
    return keg.with_name(keg.name + POURED_MARKER)


Extractor = Callable[[Path, Path], None]


class RetryableDownload:
    """可重试的下载任务"""

    def __init__(
        self,
        downloadable: Downloadable,
        tries: int,
        *,
        force: bool = False,
        pour: bool = False,
        extractor: Extractor | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.downloadable = downloadable
        self.max_attempts = max(1, tries)
        self.attempt_count = 0
        self.force = force
        self.pour = pour
        self.extractor = extractor
        self._sleep = sleep

    # ---- 只读字段转发 ----

    @property
    def name(self) -> str:
        return self.downloadable.name

    @property
    def download_type(self) -> str:
        return self.downloadable.download_type

    @property
    def url(self) -> str:
        return self.downloadable.url

    @property
    def mirrors(self) -> tuple[str, ...]:
        return self.downloadable.mirrors

    @property
    def checksum(self) -> str:
        return self.downloadable.checksum

    @property
    def cached_download(self) -> Path:
        return self.downloadable.cached_download

    def identity(self) -> tuple[str, Path]:
        return self.downloadable.identity()

    def downloaded(self) -> bool:
        return self.downloadable.downloaded()

    def clear_cache(self) -> None:
        self.downloadable.clear_cache()

    def verify_download_integrity(self, path: Path) -> None:
        self.downloadable.verify_download_integrity(path)

    # ---- 下载 ----

    def fetch(
        self, *, timeout: float | None = None, quiet: bool = False,
        cancel: threading.Event | None = None,
    ) -> Path:
        if self.force and self.attempt_count == 0:
            self.downloadable.clear_cache()

        while True:
            self.attempt_count += 1
            try:
                path = self.downloadable.fetch(timeout=timeout, quiet=quiet, cancel=cancel)
                if self.pour and isinstance(self.downloadable, BottleDownload):
                    self._pour(self.downloadable, path)
                return path
            except TRANSIENT_ERRORS as e:
                self.downloadable.clear_cache()
                remaining = self.max_attempts - self.attempt_count
                if remaining <= 0 or (cancel is not None and cancel.is_set()):
                    raise
                wait = 2 ** self.attempt_count
                logger.warning(
                    "%s 下载失败: %s，%d 秒后重试（剩余 %d 次）",
                    self.name, e, wait, remaining,
                )
                self._sleep(wait)

    def _pour(self, bottle: BottleDownload, path: Path) -> None:
        keg = bottle.poured_keg
        if keg is None or self.extractor is None:
            return
        marker = poured_marker(keg)
        if marker.exists():
            return
        if keg.exists():
            shutil.rmtree(keg)
        try:
            self.extractor(path, bottle.temp_cellar)
            if not keg.is_dir():
                raise DownloadError(f"{self.name} 的瓶子中没有 {keg.parent.name}/{keg.name} 目录")
            marker.touch()
        except Exception:
            shutil.rmtree(keg, ignore_errors=True)
            raise
        logger.debug("已预解压 %s -> %s", path.name, keg)

    def __repr__(self) -> str:
        return f"<RetryableDownload {self.downloadable!r} {self.attempt_count}/{self.max_attempts}>"
