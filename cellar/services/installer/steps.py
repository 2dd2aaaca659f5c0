"""安装步骤实现

- pour: 从瓶子安装（复用下载队列预解压的 keg，或解压到临时 Cellar 后移入）
- build: 源码构建（临时目录 + 纯净环境），失败删除 keg
- link: 链接到前缀，冲突时按 link_overwrite 备份后重试，其余链接问题降级为警告
- post_install: 执行 post_install 命令，失败只记警告
- KegBackup: 重装前把旧 keg 改名备份，失败时恢复
"""

from __future__ import annotations

import fnmatch
import logging
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from cellar.core.exceptions import BuildError, ConflictError, DownloadError, FormulaUnavailableError, LinkError
from cellar.core.keg import BACKUP_SUFFIX, Cellar, Keg
from cellar.core.receipt import InstallReceipt
from cellar.download.downloadable import LocalArtifact
from cellar.download.retryable import poured_marker
from cellar.services.builder import pristine_env, run_commands

if TYPE_CHECKING:
    from cellar.core.formula import Formula
    from cellar.services.installer.installer import FormulaInstaller
    from cellar.services.installer.models import InstallReport
    from cellar.services.session import InstallationSession

logger = logging.getLogger(__name__)


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f}{unit}" if unit == "B" else f"{value:.1f}{unit}"
        value /= 1024
    return f"{size}B"


class KegBackup:
    """重装前的旧 keg 备份：取消链接并改名为 <keg>.tmp"""

    def __init__(self, linked_keg: Keg | None, was_linked: bool, installed: Keg | None, moved: Keg | None) -> None:
        self.linked_keg = linked_keg
        self.was_linked = was_linked
        self.installed = installed
        self.moved = moved

    @classmethod
    def create(cls, cellar: Cellar, formula: Formula) -> KegBackup:
        linked_keg = cellar.linked_keg(formula.name)
        was_linked = False
        if linked_keg is not None and linked_keg.exists():
            was_linked = linked_keg.linked()
            linked_keg.unlink()
        else:
            linked_keg = None

        installed = moved = None
        if cellar.latest_version_installed(formula):
            installed = cellar.keg_for(formula)
            tmp = installed.path.with_name(installed.path.name + BACKUP_SUFFIX)
            if not tmp.is_dir():
                moved = installed.rename(tmp)
        return cls(linked_keg, was_linked, installed, moved)

    def restore(self) -> None:
        """安装失败：把旧 keg 改回原位并恢复链接"""
        if self.moved is not None and self.installed is not None and not self.installed.path.is_dir():
            self.moved.rename(self.installed.path)
            self.installed.optlink()
        if self.was_linked and self.linked_keg is not None:
            try:
                self.linked_keg.link()
            except LinkError as e:
                logger.error("恢复 %s 的链接失败: %s", self.linked_keg.name, e)

    def discard(self) -> None:
        if self.moved is not None and self.moved.path.is_dir():
            shutil.rmtree(self.moved.path)


class InstallSteps:
    """产物获取与链接步骤集合"""

    def __init__(self, session: InstallationSession) -> None:
        self.s = session

    # =====================================================================
    # 产物获取
    # =====================================================================

    def pour(self, fi: FormulaInstaller) -> InstallReceipt:
        """从瓶子安装，任何失败都删除临时目录与 keg"""
        formula = fi.formula
        layout = self.s.layout
        keg = self.s.cellar.keg_for(formula)
        tmp_keg = layout.temp_cellar / formula.name / str(formula.pkg_version)
        marker = poured_marker(tmp_keg)
        try:
            if not (marker.exists() and tmp_keg.is_dir()):
                artifact = self._bottle_artifact(fi)
                if not (marker.exists() and tmp_keg.is_dir()):
                    if tmp_keg.exists():
                        shutil.rmtree(tmp_keg)
                    self.s.artifacts.extract(artifact, layout.temp_cellar)
                    if not tmp_keg.is_dir():
                        raise DownloadError(
                            f"{formula.full_name} 的瓶子中没有 {formula.name}/{formula.pkg_version} 目录"
                        )
            logger.info("浇注 %s", formula.full_name)
            marker.unlink(missing_ok=True)
            if keg.path.exists():
                shutil.rmtree(keg.path)
            keg.rack.mkdir(parents=True, exist_ok=True)
            shutil.move(str(tmp_keg), str(keg.path))
            if tmp_keg.parent.is_dir() and not any(tmp_keg.parent.iterdir()):
                tmp_keg.parent.rmdir()
        except BaseException:
            shutil.rmtree(tmp_keg, ignore_errors=True)
            marker.unlink(missing_ok=True)
            if keg.exists():
                keg.uninstall()
            raise

        receipt = InstallReceipt.create(
            formula, platform=self.s.platform, poured_from_bottle=True,
            installed_as_dependency=fi.installed_as_dependency,
            installed_on_request=fi.installed_on_request,
        )
        receipt.used_options = []
        receipt.unused_options = []
        built_on = fi.bottle_manifest.get("built_on") if fi.bottle_manifest else None
        if isinstance(built_on, dict):
            receipt.built_on = {k: str(v) for k, v in built_on.items()}
        return receipt

    def _bottle_artifact(self, fi: FormulaInstaller) -> Path:
        formula = fi.formula
        if formula.local_bottle_path:
            return LocalArtifact(formula.full_name, formula.local_bottle_path).fetch()
        download = self.s.artifacts.bottle_download(formula, self.s.platform.tag)
        future = self.s.queue.enqueue(download, pour=True, extractor=self.s.artifacts.extract)
        return future.result()

    def build(self, fi: FormulaInstaller) -> InstallReceipt:
        """源码构建，任何失败都删除 keg（以及空的 rack）"""
        formula = fi.formula
        keg = self.s.cellar.keg_for(formula)
        logger.info("从源码构建 %s %s", formula.full_name, " ".join(fi.display_options()))
        try:
            with tempfile.TemporaryDirectory(prefix=f"cellar-{formula.name}-") as tmp:
                work = Path(tmp)
                source_root = work / "src"
                source_root.mkdir()
                if formula.url:
                    download = self.s.artifacts.source_download(formula)
                    archive = self.s.queue.enqueue(download).result()
                    source_dir = self.s.artifacts.stage(archive, source_root)
                else:
                    source_dir = source_root
                home = work / "home"
                home.mkdir()
                if keg.path.exists():
                    shutil.rmtree(keg.path)
                keg.path.mkdir(parents=True)
                env = pristine_env(formula, prefix=self.s.layout.prefix, keg=keg.path, tmpdir=home)
                self.s.builder.run_build(formula, env, source_dir)
            if keg.empty_installation():
                raise BuildError(formula.full_name, f"没有任何文件安装到 {keg.path}")
        except BaseException:
            if keg.path.is_dir():
                shutil.rmtree(keg.path)
            if keg.rack.is_dir() and not any(keg.rack.iterdir()):
                keg.rack.rmdir()
            raise

        return InstallReceipt.create(
            formula, platform=self.s.platform, poured_from_bottle=False,
            installed_as_dependency=fi.installed_as_dependency,
            installed_on_request=fi.installed_on_request,
        )

    # =====================================================================
    # 链接
    # =====================================================================

    def link_overwrite(self, formula: Formula, path: Path, owner: str) -> bool:
        """冲突路径是否允许被本包覆盖：属于其他现存包的文件不覆盖"""
        if owner and owner != formula.name:
            try:
                self.s.loader.resolve(owner)
                return False
            except FormulaUnavailableError:
                pass
        try:
            rel = path.relative_to(self.s.layout.prefix).as_posix()
        except ValueError:
            return False
        for pattern in formula.link_overwrite:
            pattern = pattern.rstrip("/")
            if rel == pattern or rel.startswith(pattern + "/") or fnmatch.fnmatchcase(rel, pattern):
                return True
        return False

    def link(self, fi: FormulaInstaller, keg: Keg, report: InstallReport) -> None:
        """链接 keg；冲突与链接错误降级为警告，意外异常撤销链接、恢复备份后重新抛出"""
        formula = fi.formula
        try:
            keg.optlink()
        except OSError as e:
            logger.error("创建 %s 失败: %s，依赖它的包可能无法构建", keg.opt_record, e)
            report.degraded = True

        if not fi.link_keg:
            logger.info("%s 为 keg-only，仅创建 opt 链接", formula.full_name)
            return

        if keg.linked():
            logger.warning("%s 已标记为链接，继续", keg)
            keg.linked_keg_record.unlink()

        backups: dict[Path, Path] = {}
        backup_dir = self.s.layout.backup_dir
        while True:
            try:
                report.linked_files = keg.link(overwrite=fi.options.overwrite)
                break
            except ConflictError as e:
                if e.dst not in backups and self.link_overwrite(formula, e.dst, e.owner):
                    backup = backup_dir / e.dst.relative_to(self.s.layout.prefix)
                    backup.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(e.dst), str(backup))
                    backups[e.dst] = backup
                    continue
                logger.error(
                    "%s 的链接步骤未完成: %s。包已安装但未链接到 %s，"
                    "请处理冲突文件后手动重新链接",
                    formula.full_name, e, self.s.layout.prefix,
                )
                report.degraded = True
                break
            except LinkError as e:
                logger.error("%s 的链接步骤未完成: %s", formula.full_name, e)
                report.degraded = True
                break
            except BaseException:
                logger.error("%s 链接时发生意外错误", formula.full_name)
                keg.unlink()
                for origin, backup in backups.items():
                    origin.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(backup), str(origin))
                raise

        if backups:
            report.backups = {str(k): str(v) for k, v in backups.items()}
            logger.warning(
                "链接时覆盖了以下文件，已备份到 %s: %s",
                backup_dir, ", ".join(str(p) for p in backups),
            )

    # =====================================================================
    # post_install
    # =====================================================================

    def post_install(self, fi: FormulaInstaller, keg: Keg, report: InstallReport) -> None:
        formula = fi.formula
        if not formula.post_install_defined:
            return
        if fi.options.skip_post_install:
            logger.info("按要求跳过 %s 的 post_install", formula.full_name)
            return
        with tempfile.TemporaryDirectory(prefix=f"cellar-{formula.name}-post-") as tmp:
            env = pristine_env(formula, prefix=self.s.layout.prefix, keg=keg.path, tmpdir=Path(tmp))
            try:
                run_commands(
                    self.s.executor, formula.post_install,
                    formula=formula, env=env, cwd=keg.path, label="post_install",
                )
            except BuildError as e:
                message = f"{formula.full_name} 的 post_install 未成功完成: {e}"
                logger.warning(message)
                report.warnings.append(message)
