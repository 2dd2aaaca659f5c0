"""Keg 与 Cellar 索引

Keg: <prefix>/Cellar/<name>/<pkg_version> 下某个包某个版本的安装目录，
负责链接到 <prefix>/{bin,lib,...}、opt 链接、卸载与改名备份。

Cellar: 已安装 keg 的只读视图，供依赖满足性判断查询。
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

from cellar.core.exceptions import ConflictError, LinkError
from cellar.core.layout import KEG_LINK_DIRECTORIES, Layout
from cellar.core.receipt import RECEIPT_FILENAME, InstallReceipt, JsonReceiptStore
from cellar.core.versions import PkgVersion

if TYPE_CHECKING:
    from cellar.core.formula import Formula
    from cellar.core.protocols import ReceiptStore

logger = logging.getLogger(__name__)

# keg 中不计入安装内容的元数据文件
KEG_METADATA_FILES = frozenset((RECEIPT_FILENAME,))

# 重装依赖前把旧 keg 改名为 <keg>.tmp，失败时再改回
BACKUP_SUFFIX = ".tmp"


class Keg:
    """一个已安装（或正在安装）的包版本目录"""

    def __init__(self, path: Path, layout: Layout, receipts: ReceiptStore | None = None) -> None:
        self.path = Path(path)
        self.layout = layout
        self._receipts = receipts or JsonReceiptStore()

    @property
    def name(self) -> str:
        return self.path.parent.name

    @property
    def rack(self) -> Path:
        return self.path.parent

    @property
    def pkg_version(self) -> PkgVersion:
        return PkgVersion.parse(self.path.name)

    @property
    def opt_record(self) -> Path:
        return self.layout.opt / self.name

    @property
    def linked_keg_record(self) -> Path:
        return self.layout.linked_dir / self.name

    def exists(self) -> bool:
        return self.path.is_dir()

    def receipt(self) -> InstallReceipt | None:
        return self._receipts.read(self.path)

    def empty_installation(self) -> bool:
        """keg 中除元数据外没有任何文件"""
        if not self.path.is_dir():
            return True
        for child in self.path.rglob("*"):
            if child.name in KEG_METADATA_FILES and child.parent == self.path:
                continue
            if child.is_file() or child.is_symlink():
                return False
        return True

    def disk_usage(self) -> tuple[int, int]:
        """(文件数, 字节数)"""
        count = size = 0
        for child in self.path.rglob("*"):
            if child.is_file() and not child.is_symlink():
                count += 1
                size += child.stat().st_size
        return count, size

    # =====================================================================
    # 链接
    # =====================================================================

    def linked(self) -> bool:
        record = self.linked_keg_record
        return record.is_symlink() and Path(os.readlink(record)) == self.path

    def optlinked(self) -> bool:
        record = self.opt_record
        return record.is_symlink() and Path(os.readlink(record)) == self.path

    def optlink(self) -> None:
        """opt/<name> 始终指向当前 keg"""
        _replace_symlink(self.opt_record, self.path)

    def link(self, *, overwrite: bool = False) -> int:
        """把 keg 中的文件链接到安装前缀，返回创建的链接数

        目标已存在且不属于本 keg 时抛出 ConflictError（overwrite 时直接替换）；
        中途失败会撤销本次已创建的链接。
        """
        if self.linked():
            raise LinkError(f"{self.name} 已链接，请先 unlink")
        created = 0
        try:
            for src in self._linkable_files():
                dst = self.layout.prefix / src.relative_to(self.path)
                if dst.is_symlink() and Path(os.readlink(dst)) == src:
                    continue
                if dst.exists() or dst.is_symlink():
                    if not overwrite:
                        raise ConflictError(dst, owner=self._owner_of(dst))
                    _remove_path(dst)
                dst.parent.mkdir(parents=True, exist_ok=True)
                dst.symlink_to(src)
                created += 1
        except Exception:
            self.unlink()
            raise
        _replace_symlink(self.linked_keg_record, self.path)
        logger.debug("已链接 %s: %d 个文件", self.path, created)
        return created

    def unlink(self) -> int:
        """删除前缀中所有指向本 keg 的链接，返回删除数"""
        removed = 0
        for dirname in KEG_LINK_DIRECTORIES:
            root = self.layout.prefix / dirname
            if not root.is_dir():
                continue
            for dst in sorted(root.rglob("*"), reverse=True):
                if dst.is_symlink():
                    target = Path(os.readlink(dst))
                    if target == self.path or self.path in target.parents:
                        dst.unlink()
                        removed += 1
                elif dst.is_dir() and not any(dst.iterdir()):
                    dst.rmdir()
        if self.linked_keg_record.is_symlink():
            self.linked_keg_record.unlink()
        return removed

    def remove_opt_record(self) -> None:
        if self.optlinked():
            self.opt_record.unlink()

    def _linkable_files(self) -> list[Path]:
        files: list[Path] = []
        for dirname in KEG_LINK_DIRECTORIES:
            root = self.path / dirname
            if not root.is_dir():
                continue
            files.extend(
                p for p in sorted(root.rglob("*"))
                if p.is_file() or p.is_symlink()
            )
        return files

    def _owner_of(self, dst: Path) -> str:
        if not dst.is_symlink():
            return ""
        target = Path(os.readlink(dst))
        try:
            return target.relative_to(self.layout.cellar).parts[0]
        except (ValueError, IndexError):
            return ""

    # =====================================================================
    # 生命周期
    # =====================================================================

    def rename(self, new_path: Path) -> Keg:
        """把 keg 整体移到 new_path（重装前的备份），返回新位置的 Keg"""
        new_path = Path(new_path)
        if new_path.exists():
            shutil.rmtree(new_path)
        self.path.rename(new_path)
        return Keg(new_path, self.layout, self._receipts)

    def uninstall(self) -> None:
        """删除 keg 目录及其 opt 链接，rack 为空时一并删除"""
        self.remove_opt_record()
        if self.path.is_dir():
            shutil.rmtree(self.path)
        if self.rack.is_dir() and not any(self.rack.iterdir()):
            self.rack.rmdir()

    def __repr__(self) -> str:
        return f"<Keg {self.path}>"

    def __str__(self) -> str:
        return str(self.path)


class Cellar:
    """已安装包的查询视图"""

    def __init__(self, layout: Layout, receipts: ReceiptStore | None = None) -> None:
        self.layout = layout
        self.receipts = receipts or JsonReceiptStore()

    def rack(self, name: str) -> Path:
        return self.layout.cellar / name

    def opt_prefix(self, name: str) -> Path:
        return self.layout.opt / name

    def keg_path(self, formula: Formula) -> Path:
        return self.rack(formula.name) / str(formula.pkg_version)

    def keg_for(self, formula: Formula) -> Keg:
        return Keg(self.keg_path(formula), self.layout, self.receipts)

    def installed_kegs(self, name: str) -> list[Keg]:
        """按版本从低到高排列"""
        rack = self.rack(name)
        if not rack.is_dir():
            return []
        kegs = [
            Keg(p, self.layout, self.receipts)
            for p in rack.iterdir()
            if p.is_dir() and not p.name.endswith(BACKUP_SUFFIX) and any(p.iterdir())
        ]
        return sorted(kegs, key=lambda k: k.pkg_version)

    def latest_version_installed(self, formula: Formula) -> bool:
        path = self.keg_path(formula)
        return path.is_dir() and any(path.iterdir())

    def any_installed_keg(self, formula: Formula) -> Keg | None:
        """opt 链接指向的 keg 优先，否则取任一可能名称下最新的 keg"""
        for name in formula.possible_names:
            opt = self.opt_prefix(name)
            if opt.is_symlink():
                target = Path(os.readlink(opt))
                if target.is_dir():
                    return Keg(target, self.layout, self.receipts)
        for name in formula.possible_names:
            kegs = self.installed_kegs(name)
            if kegs:
                return kegs[-1]
        return None

    def installed(self, formula: Formula) -> bool:
        return self.any_installed_keg(formula) is not None

    def linked_keg(self, name: str) -> Keg | None:
        record = self.layout.linked_dir / name
        if not record.is_symlink():
            return None
        return Keg(Path(os.readlink(record)), self.layout, self.receipts)

    def pinned(self, name: str) -> bool:
        return (self.layout.pinned_dir / name).exists()

    def pin(self, formula: Formula) -> None:
        keg = self.any_installed_keg(formula)
        if keg is None:
            raise LinkError(f"{formula.full_name} 未安装，无法固定版本")
        _replace_symlink(self.layout.pinned_dir / formula.name, keg.path)


def _replace_symlink(link: Path, target: Path) -> None:
    link.parent.mkdir(parents=True, exist_ok=True)
    if link.is_symlink() or link.exists():
        _remove_path(link)
    link.symlink_to(target)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()
