"""安装回执（INSTALL_RECEIPT.json）

生命周期: 创建 -> 安装过程中逐步修改 -> 安装成功后原子写入一次 -> 只读。
写入后再赋值会抛出 ReceiptError；重装会创建全新的回执。
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from cellar import __version__
from cellar.core.exceptions import ReceiptError
from cellar.utils.fileio import load_json, save_json

if TYPE_CHECKING:
    from cellar.core.formula import Formula
    from cellar.core.platform import Platform

logger = logging.getLogger(__name__)

RECEIPT_FILENAME = "INSTALL_RECEIPT.json"


@dataclass
class InstallReceipt:
    """一个 keg 的安装记录"""

    name: str
    version: str = ""
    revision: int = 0
    used_options: list[str] = field(default_factory=list)
    unused_options: list[str] = field(default_factory=list)
    built_as_bottle: bool = False
    poured_from_bottle: bool = False
    installed_as_dependency: bool = False
    installed_on_request: bool = False
    runtime_dependencies: list[dict[str, Any]] | None = None
    installer_version: str = __version__
    time: int | None = None
    arch: str = ""
    compatibility_version: int | None = None
    source: dict[str, Any] = field(default_factory=dict)
    built_on: dict[str, str] = field(default_factory=dict)
    aliases: list[str] = field(default_factory=list)
    _written: bool = field(default=False, init=False, repr=False, compare=False)

    def __setattr__(self, key: str, value: Any) -> None:
        if getattr(self, "_written", False):
            raise ReceiptError(f"{self.name} 的安装回执已写入，不能再修改 {key}")
        object.__setattr__(self, key, value)

    @classmethod
    def create(
        cls, formula: Formula, *,
        platform: Platform | None = None,
        poured_from_bottle: bool = False,
        installed_as_dependency: bool = False,
        installed_on_request: bool = False,
    ) -> InstallReceipt:
        """安装开始时创建回执"""
        used = sorted(formula.build.used_options)
        return cls(
            name=formula.name,
            version=formula.version,
            revision=formula.revision,
            used_options=used,
            unused_options=sorted(o for o in formula.options if o not in used),
            built_as_bottle=poured_from_bottle,
            poured_from_bottle=poured_from_bottle,
            installed_as_dependency=installed_as_dependency,
            installed_on_request=installed_on_request,
            time=int(time.time()),
            arch=platform.arch if platform else "",
            compatibility_version=formula.compatibility_version,
            source={
                "tap": formula.tap,
                "path": formula.path,
                "versions": {
                    "stable": formula.version,
                    "compatibility_version": formula.compatibility_version,
                },
            },
            built_on={"os": platform.os, "os_version": platform.os_version} if platform else {},
            aliases=list(formula.aliases),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstallReceipt:
        known = {f.name for f in fields(cls) if f.init}
        receipt = cls(**{k: v for k, v in data.items() if k in known})
        object.__setattr__(receipt, "_written", True)
        return receipt

    @property
    def written(self) -> bool:
        return self._written

    @property
    def runtime_dependency_names(self) -> list[str]:
        return [d["full_name"] for d in self.runtime_dependencies or []]

    def mark_written(self) -> None:
        object.__setattr__(self, "_written", True)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("_written", None)
        return data


class JsonReceiptStore:
    """JSON 文件回执存储，读取结果按 keg 路径缓存"""

    def __init__(self) -> None:
        self._cache: dict[Path, InstallReceipt] = {}
        self._lock = threading.Lock()

    def write(self, receipt: InstallReceipt, keg_path: Path) -> None:
        """原子写入回执，写入后回执不可再修改"""
        if receipt.written:
            raise ReceiptError(f"{receipt.name} 的安装回执只能写入一次")
        path = Path(keg_path) / RECEIPT_FILENAME
        save_json(path, receipt.to_dict(), durable=True)
        receipt.mark_written()
        with self._lock:
            self._cache[Path(keg_path)] = receipt
        logger.debug("安装回执已写入: %s", path)

    def read(self, keg_path: Path) -> InstallReceipt | None:
        keg_path = Path(keg_path)
        with self._lock:
            if keg_path in self._cache:
                return self._cache[keg_path]
        path = keg_path / RECEIPT_FILENAME
        try:
            data = load_json(path)
            receipt = InstallReceipt.from_dict(data) if data is not None else None
        except (ValueError, TypeError) as e:
            # 损坏的回执按不存在处理
            logger.warning("忽略无法解析的安装回执 %s: %s", path, e)
            return None
        if receipt is None:
            return None
        with self._lock:
            self._cache[keg_path] = receipt
        return receipt

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()
