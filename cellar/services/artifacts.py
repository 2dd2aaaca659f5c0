"""预构建产物存储：ArtifactStore 的参考实现

瓶子是 tar.gz 归档，根目录为 <name>/<pkg_version>/；
按平台标签（找不到时回退到 all）选择，清单可以内联在 tap 中，也可以单独下载。
解压前逐个检查成员，拒绝绝对路径、.. 以及指向归档外的链接。
"""

from __future__ import annotations

import logging
import os
import tarfile
import zipfile
from pathlib import Path
from typing import Any

from cellar.core.exceptions import BottleManifestError, DownloadError
from cellar.core.formula import BottleSpec, Formula
from cellar.core.layout import Layout
from cellar.download.downloadable import BottleDownload, BottleManifestDownload, SourceDownload

logger = logging.getLogger(__name__)


def _validate_manifest(name: str, data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise BottleManifestError(f"{name} 的瓶子清单格式错误")
    runtime = data.get("runtime_dependencies", [])
    if not isinstance(runtime, list) or not all(isinstance(d, dict) and d.get("full_name") for d in runtime):
        raise BottleManifestError(f"{name} 的瓶子清单 runtime_dependencies 无效")
    return data


def _safe_members(tar: tarfile.TarFile, destination: Path) -> list[tarfile.TarInfo]:
    root = destination.resolve()
    members = tar.getmembers()
    for m in members:
        target = (root / m.name).resolve()
        if m.name.startswith("/") or (target != root and root not in target.parents):
            raise DownloadError(f"归档包含非法路径: {m.name}")
        if m.issym() or m.islnk():
            link_base = target.parent if m.issym() else root
            link_target = (link_base / m.linkname).resolve()
            if os.path.isabs(m.linkname) or (link_target != root and root not in link_target.parents):
                raise DownloadError(f"归档包含指向外部的链接: {m.name} -> {m.linkname}")
        if m.isdev():
            raise DownloadError(f"归档包含设备文件: {m.name}")
    return members


class TarballArtifactStore:
    """基于 tar 归档的瓶子与源码处理"""

    def __init__(self, layout: Layout) -> None:
        self.layout = layout

    def bottle_for(self, formula: Formula, platform_tag: str) -> BottleSpec | None:
        return formula.bottle_for(platform_tag)

    def has_artifact_for(self, formula: Formula, platform_tag: str) -> bool:
        return self.bottle_for(formula, platform_tag) is not None

    # =====================================================================
    # 下载对象
    # =====================================================================

    def bottle_download(self, formula: Formula, platform_tag: str) -> BottleDownload:
        bottle = self.bottle_for(formula, platform_tag)
        if bottle is None:
            raise DownloadError(f"{formula.full_name} 没有适用于 {platform_tag} 的瓶子")
        return BottleDownload(formula, bottle, self.layout.downloads, temp_cellar=self.layout.temp_cellar)

    def manifest_download(self, formula: Formula, platform_tag: str) -> BottleManifestDownload | None:
        """需要单独下载清单时返回下载对象，清单内联或不存在时返回 None"""
        bottle = self.bottle_for(formula, platform_tag)
        if bottle is None or bottle.manifest is not None or not bottle.manifest_url:
            return None
        return BottleManifestDownload(formula, bottle, self.layout.downloads)

    def source_download(self, formula: Formula) -> SourceDownload:
        return SourceDownload(formula, self.layout.downloads)

    # =====================================================================
    # ArtifactStore 协议
    # =====================================================================

    def fetch_manifest(self, formula: Formula, platform_tag: str) -> dict[str, Any]:
        bottle = self.bottle_for(formula, platform_tag)
        if bottle is None:
            raise BottleManifestError(f"{formula.full_name} 没有适用于 {platform_tag} 的瓶子")
        if bottle.manifest is not None:
            return _validate_manifest(formula.full_name, bottle.manifest)
        download = self.manifest_download(formula, platform_tag)
        if download is None:
            raise BottleManifestError(f"{formula.full_name} 的瓶子没有清单")
        download.fetch(quiet=True)
        return _validate_manifest(formula.full_name, download.manifest())

    def manifest_from(self, formula: Formula, download: BottleManifestDownload) -> dict[str, Any]:
        return _validate_manifest(formula.full_name, download.manifest())

    def extract(self, artifact_path: Path, destination: Path) -> None:
        """安全解压 tar / zip 归档到 destination"""
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        try:
            if zipfile.is_zipfile(artifact_path):
                with zipfile.ZipFile(artifact_path) as zf:
                    root = destination.resolve()
                    for name in zf.namelist():
                        target = (root / name).resolve()
                        if target != root and root not in target.parents:
                            raise DownloadError(f"归档包含非法路径: {name}")
                    zf.extractall(destination)
                return
            with tarfile.open(artifact_path) as tar:
                tar.extractall(destination, members=_safe_members(tar, destination))  # nosec B202
        except (tarfile.TarError, zipfile.BadZipFile, EOFError) as e:
            raise DownloadError(f"归档损坏 {artifact_path}: {e}") from e
        logger.debug("已解压 %s -> %s", artifact_path, destination)

    def stage(self, artifact_path: Path, destination: Path) -> Path:
        """解压源码并返回源码根目录（归档只有一个顶层目录时进入该目录）

        非归档文件直接复制到 destination。
        """
        destination = Path(destination)
        destination.mkdir(parents=True, exist_ok=True)
        if tarfile.is_tarfile(artifact_path) or zipfile.is_zipfile(artifact_path):
            self.extract(artifact_path, destination)
        else:
            (destination / Path(artifact_path).name).write_bytes(Path(artifact_path).read_bytes())
        children = list(destination.iterdir())
        if len(children) == 1 and children[0].is_dir():
            return children[0]
        return destination
