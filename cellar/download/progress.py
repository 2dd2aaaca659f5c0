"""并发下载的实时进度表（rich）

每个下载一行：进行中显示 spinner，成功 ✔，失败 ✘。
只在并发度 > 1 时启用；此时下载本身以 quiet 模式运行，避免输出交错。
"""

from __future__ import annotations

import threading
from typing import Hashable

from rich.console import Console
from rich.live import Live
from rich.spinner import Spinner
from rich.table import Table
from rich.text import Text

PENDING = "pending"
DONE = "done"
FAILED = "failed"


class DownloadProgress:
    """rich Live 渲染的下载状态表，线程安全"""

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console(stderr=True)
        self._rows: dict[Hashable, list[str]] = {}
        self._spinners: dict[Hashable, Spinner] = {}
        self._lock = threading.Lock()
        self._live: Live | None = None

    def add(self, key: Hashable, label: str) -> None:
        with self._lock:
            self._rows.setdefault(key, [label, PENDING, ""])
            self._spinners.setdefault(key, Spinner("dots"))

    def done(self, key: Hashable) -> None:
        self._set(key, DONE, "")

    def failed(self, key: Hashable, detail: str = "") -> None:
        self._set(key, FAILED, detail)

    def _set(self, key: Hashable, state: str, detail: str) -> None:
        with self._lock:
            if key in self._rows:
                self._rows[key][1:] = [state, detail]

    def __rich__(self) -> Table:
        table = Table.grid(padding=(0, 1))
        table.add_column(width=2)
        table.add_column()
        table.add_column(style="dim")
        with self._lock:
            for key, (label, state, detail) in self._rows.items():
                if state == DONE:
                    mark: Spinner | Text = Text("✔", style="green")
                elif state == FAILED:
                    mark = Text("✘", style="red")
                else:
                    mark = self._spinners[key]
                table.add_row(mark, label, detail)
        return table

    def start(self) -> None:
        if self._live is None:
            self._live = Live(self, console=self.console, refresh_per_second=10, transient=False)
            self._live.start()

    def stop(self) -> None:
        if self._live is not None:
            self._live.refresh()
            self._live.stop()
            self._live = None

    def __enter__(self) -> DownloadProgress:
        self.start()
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()
