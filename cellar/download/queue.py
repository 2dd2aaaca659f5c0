"""并发下载队列

- identity -> Future 映射（互斥锁保护），同一 identity 只会下载一次，
  重复入队返回同一个 Future
- 固定大小线程池执行下载，每个下载包装为 RetryableDownload
- 并发度 > 1 时用 rich 实时表格展示进度，下载以 quiet 模式运行；
  并发度 = 1 时顺序执行，日志照常输出
- 等待过程中被中断（KeyboardInterrupt 等）时设置取消事件、拒绝新任务、
  以 cancel_futures=True 关闭线程池后重新抛出；进行中的下载在下一个分块边界退出
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from pathlib import Path
from typing import Callable, Hashable

from rich.console import Console

from cellar.core.exceptions import ChecksumMismatchError, DownloadQueueClosedError
from cellar.download.downloadable import Downloadable
from cellar.download.progress import DownloadProgress
from cellar.download.retryable import Extractor, RetryableDownload
from cellar.utils.logger import formula_context

logger = logging.getLogger(__name__)


class DownloadQueue:
    """会话级下载队列"""

    def __init__(
        self,
        concurrency: int = 1,
        retries: int = 0,
        force: bool = False,
        *,
        timeout: float | None = None,
        console: Console | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.concurrency = max(1, concurrency)
        self.quiet = self.concurrency > 1
        self.tries = max(0, retries) + 1
        self.force = force
        self.timeout = timeout
        self._sleep = sleep
        self._pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="cellar-fetch")
        self._downloads: dict[Hashable, tuple[RetryableDownload, Future]] = {}
        self._waited: set[Hashable] = set()
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._closed = False
        self._progress = DownloadProgress(console) if self.quiet else None

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel

    def __len__(self) -> int:
        with self._lock:
            return len(self._downloads)

    def enqueue(
        self, downloadable: Downloadable, pour: bool = False,
        extractor: Extractor | None = None,
    ) -> Future:
        """入队并立即开始下载；同一 identity 重复入队返回已有的 Future"""
        key = downloadable.identity()
        with self._lock:
            if self._closed:
                raise DownloadQueueClosedError(f"下载队列已关闭，无法加入 {downloadable.name}")
            existing = self._downloads.get(key)
            if existing is not None:
                return existing[1]
            download = RetryableDownload(
                downloadable, self.tries,
                force=self.force, pour=pour, extractor=extractor, sleep=self._sleep,
            )
            if self._progress is not None:
                self._progress.add(key, f"{downloadable.download_type.capitalize()} {downloadable.name}")
            future = self._pool.submit(self._fetch, download)
            self._downloads[key] = (download, future)
        future.add_done_callback(lambda f: self._on_done(key, f))
        return future

    def future_for(self, downloadable: Downloadable) -> Future | None:
        with self._lock:
            entry = self._downloads.get(downloadable.identity())
            return entry[1] if entry else None

    def _fetch(self, download: RetryableDownload) -> Path:
        with formula_context(download.name):
            return download.fetch(timeout=self.timeout, quiet=self.quiet, cancel=self._cancel)

    def _on_done(self, key: Hashable, future: Future) -> None:
        if self._progress is None:
            return
        if future.cancelled() or future.exception() is not None:
            self._progress.failed(key)
        else:
            self._progress.done(key)

    def run_to_completion(self) -> list[tuple[Downloadable, BaseException]]:
        """阻塞直到所有已入队下载结束，返回 [(downloadable, 异常)] 失败列表

        每个下载只在第一次等待时报告一次；等待期间新入队的下载也会被等待。
        """
        failures: list[tuple[Downloadable, BaseException]] = []
        if self._progress is not None:
            self._progress.start()
        try:
            while True:
                with self._lock:
                    batch = [
                        (key, download, future)
                        for key, (download, future) in self._downloads.items()
                        if key not in self._waited
                    ]
                if not batch:
                    break
                wait_futures([future for _, _, future in batch])
                for key, download, future in batch:
                    self._waited.add(key)
                    exc = future.exception() if not future.cancelled() else DownloadQueueClosedError(
                        f"{download.name} 的下载已取消"
                    )
                    if exc is None:
                        continue
                    self._report(download, exc)
                    failures.append((download.downloadable, exc))
        except BaseException:
            self.cancel()
            raise
        finally:
            if self._progress is not None:
                self._progress.stop()
        return failures

    start = run_to_completion

    def _report(self, download: RetryableDownload, exc: BaseException) -> None:
        label = f"{download.download_type.capitalize()} {download.name}"
        if isinstance(exc, ChecksumMismatchError):
            logger.warning("%s 校验和不一致: 期望 %s", label, exc.expected)
        else:
            logger.error("%s 下载失败: %s", label, exc)

    def cancel(self) -> None:
        """拒绝新任务并终止线程池，进行中的下载在分块边界退出"""
        with self._lock:
            self._closed = True
        self._cancel.set()
        self._pool.shutdown(wait=False, cancel_futures=True)
        logger.warning("下载队列已取消")

    def shutdown(self) -> None:
        """等待进行中的下载结束并释放线程池"""
        with self._lock:
            self._closed = True
        self._pool.shutdown(wait=True)

    def __enter__(self) -> DownloadQueue:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown()
