"""领域协议定义

集中定义安装引擎与外部协作者之间的接口契约（Protocol），
实现依赖倒置：编排器依赖抽象而非具体实现。

使用 typing.Protocol 而非 ABC，使得现有类无需修改继承关系即可满足协议。
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:
    from cellar.core.formula import BottleSpec, Formula
    from cellar.core.keg import Keg
    from cellar.core.receipt import InstallReceipt
    from cellar.download.downloadable import BottleManifestDownload, Downloadable


# =========================================================================
# 包定义加载协议
# =========================================================================

class FormulaLoader(Protocol):
    """包定义加载器协议

    每次 resolve 返回一个新的 Formula 实例（其运行期字段可被编排器修改）。
    """

    def resolve(self, name: str) -> Formula:
        """按名称（可带 tap 前缀）解析包定义，找不到时抛出 FormulaUnavailableError"""
        ...

    def rename_of(self, name: str) -> str | None:
        """包改名后的新名称"""
        ...

    def tap_migration_of(self, name: str) -> str | None:
        """包迁移到的新 tap"""
        ...


# =========================================================================
# 产物存储协议
# =========================================================================

class ArtifactStore(Protocol):
    """预构建产物（瓶子）来源"""

    def has_artifact_for(self, formula: Formula, platform_tag: str) -> bool:
        ...

    def bottle_for(self, formula: Formula, platform_tag: str) -> BottleSpec | None:
        ...

    def fetch_manifest(self, formula: Formula, platform_tag: str) -> dict[str, Any]:
        """返回 {"runtime_dependencies": [...], "built_on": {...}}，失败抛出 BottleManifestError"""
        ...

    def extract(self, artifact_path: Path, destination: Path) -> None:
        ...

    def bottle_download(self, formula: Formula, platform_tag: str) -> Downloadable:
        """瓶子的下载对象，交给下载队列执行"""
        ...

    def manifest_download(self, formula: Formula, platform_tag: str) -> BottleManifestDownload | None:
        ...

    def manifest_from(self, formula: Formula, download: BottleManifestDownload) -> dict[str, Any]:
        ...

    def source_download(self, formula: Formula) -> Downloadable:
        ...

    def stage(self, artifact_path: Path, destination: Path) -> Path:
        """解压源码，返回源码根目录"""
        ...


# =========================================================================
# 构建 / 审计 / 回执协议
# =========================================================================

class SandboxedBuilder(Protocol):
    """源码构建器：每次调用都在独立子进程中以纯净环境执行"""

    def run_build(self, formula: Formula, env: dict[str, str], source_dir: Path) -> None:
        """失败时抛出 BuildError"""
        ...


class LinkageAuditor(Protocol):
    """安装后链接检查（仅供参考，不影响安装结果）"""

    def audit(self, keg: Keg) -> list[str]:
        """返回缺失或异常的链接项"""
        ...


class ReceiptStore(Protocol):
    """安装回执存储"""

    def write(self, receipt: InstallReceipt, keg_path: Path) -> None:
        ...

    def read(self, keg_path: Path) -> InstallReceipt | None:
        ...

    def clear_cache(self) -> None:
        ...
