"""包级建议锁

每个包名一个锁文件 <prefix>/var/cellar/locks/<name>.formula.lock，
用 fcntl.flock 非阻塞独占加锁；被其他进程持有时抛出 OperationInProgressError。
同一会话内重复加同名锁是幂等的。
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from pathlib import Path
from typing import Iterable

from cellar.core.exceptions import OperationInProgressError

logger = logging.getLogger(__name__)


class FormulaLock:
    """单个包名的文件锁"""

    def __init__(self, name: str, locks_dir: Path) -> None:
        self.name = name
        self.path = Path(locks_dir) / f"{name.replace('/', '-')}.formula.lock"
        self._fd: int | None = None

    @property
    def locked(self) -> bool:
        return self._fd is not None

    def lock(self) -> None:
        if self._fd is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            os.close(fd)
            raise OperationInProgressError(
                f"另一个进程正在操作 {self.name}，请等待其完成后重试"
            ) from e
        self._fd = fd

    def unlock(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None


class LockManager:
    """会话持有的锁集合，线程安全"""

    def __init__(self, locks_dir: Path) -> None:
        self.locks_dir = Path(locks_dir)
        self._locks: dict[str, FormulaLock] = {}
        self._mutex = threading.Lock()

    def acquire(self, names: Iterable[str]) -> list[str]:
        """对一组包名加锁，返回本次新加锁的名称；任一失败则回滚本次加的锁"""
        acquired: list[str] = []
        with self._mutex:
            try:
                for name in names:
                    if name in self._locks:
                        continue
                    lock = FormulaLock(name, self.locks_dir)
                    lock.lock()
                    self._locks[name] = lock
                    acquired.append(name)
            except OperationInProgressError:
                for name in acquired:
                    self._locks.pop(name).unlock()
                raise
        if acquired:
            logger.debug("已加锁: %s", ", ".join(acquired))
        return acquired

    def release(self, names: Iterable[str] | None = None) -> None:
        """释放指定名称的锁，names 为 None 时释放全部"""
        with self._mutex:
            targets = list(self._locks) if names is None else [n for n in names if n in self._locks]
            for name in targets:
                self._locks.pop(name).unlock()

    def held(self) -> list[str]:
        with self._mutex:
            return list(self._locks)
