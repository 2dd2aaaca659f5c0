"""DownloadQueue 单元测试"""

from __future__ import annotations

import threading
from io import StringIO
from pathlib import Path

import pytest
from rich.console import Console

from cellar.core.exceptions import DownloadError, DownloadQueueClosedError
from cellar.download.progress import DONE, FAILED, DownloadProgress
from cellar.download.queue import DownloadQueue


class FakeDownload:
    """按 identity 去重的假下载对象"""

    download_type = "source"
    url = "file:///dev/null"
    mirrors: tuple[str, ...] = ()
    checksum = ""

    def __init__(self, name: str, path: Path, *, fail: bool = False, gate: threading.Event | None = None) -> None:
        self.name = name
        self.path = path
        self.fail = fail
        self.gate = gate
        self.calls = 0
        self.lock = threading.Lock()

    @property
    def cached_download(self) -> Path:
        return self.path

    def identity(self):
        return self.download_type, self.path

    def downloaded(self) -> bool:
        return self.path.exists()

    def fetch(self, *, timeout=None, quiet=False, cancel=None) -> Path:
        with self.lock:
            self.calls += 1
        if self.gate is not None:
            self.gate.wait(5)
        if self.fail:
            raise DownloadError(f"{self.name} 失败")
        self.path.write_text(self.name, encoding="utf-8")
        return self.path

    def clear_cache(self) -> None:
        self.path.unlink(missing_ok=True)

    def verify_download_integrity(self, path: Path) -> None:
        pass


def _queue(concurrency: int = 1, retries: int = 0) -> DownloadQueue:
    console = Console(file=StringIO(), force_terminal=False)
    return DownloadQueue(concurrency, retries, console=console, sleep=lambda s: None)


class TestEnqueue:
    def test_same_identity_same_future(self, tmp_path: Path) -> None:
        gate = threading.Event()
        a = FakeDownload("lib", tmp_path / "lib", gate=gate)
        twin = FakeDownload("lib", tmp_path / "lib")
        with _queue(2) as q:
            f1 = q.enqueue(a)
            f2 = q.enqueue(twin)
            assert f1 is f2
            assert len(q) == 1
            assert q.future_for(twin) is f1
            gate.set()
            assert q.run_to_completion() == []
        assert a.calls == 1
        assert twin.calls == 0
        assert f1.result() == tmp_path / "lib"

    def test_failures_reported_once(self, tmp_path: Path) -> None:
        ok = FakeDownload("ok", tmp_path / "ok")
        bad = FakeDownload("bad", tmp_path / "bad", fail=True)
        with _queue(2, retries=1) as q:
            q.enqueue(ok)
            q.enqueue(bad)
            failures = q.run_to_completion()
            assert [(d.name, type(e)) for d, e in failures] == [("bad", DownloadError)]
            assert q.run_to_completion() == []
        assert bad.calls == 2

    def test_sequential_mode_not_quiet(self, tmp_path: Path) -> None:
        q = _queue(1)
        assert not q.quiet
        q.enqueue(FakeDownload("lib", tmp_path / "lib"))
        assert q.run_to_completion() == []
        q.shutdown()

    def test_closed_queue_rejects(self, tmp_path: Path) -> None:
        q = _queue()
        q.shutdown()
        with pytest.raises(DownloadQueueClosedError):
            q.enqueue(FakeDownload("lib", tmp_path / "lib"))

    def test_cancel_sets_event_and_closes(self, tmp_path: Path) -> None:
        q = _queue()
        q.cancel()
        assert q.cancel_event.is_set()
        assert q.closed
        with pytest.raises(DownloadQueueClosedError):
            q.enqueue(FakeDownload("lib", tmp_path / "lib"))

    def test_interrupt_while_waiting_cancels(self, tmp_path: Path, monkeypatch) -> None:
        gate = threading.Event()
        q = _queue(2)
        q.enqueue(FakeDownload("slow", tmp_path / "slow", gate=gate))

        def interrupted(futures):
            raise KeyboardInterrupt

        monkeypatch.setattr("cellar.download.queue.wait_futures", interrupted)
        with pytest.raises(KeyboardInterrupt):
            q.run_to_completion()
        assert q.cancel_event.is_set()
        assert q.closed
        gate.set()


class TestProgress:
    def test_row_states(self) -> None:
        p = DownloadProgress(Console(file=StringIO()))
        p.add("a", "Bottle a")
        p.add("b", "Bottle b")
        p.done("a")
        p.failed("b", "boom")
        assert p._rows["a"][1] == DONE
        assert p._rows["b"][1:] == [FAILED, "boom"]
        assert p.__rich__().row_count == 2
