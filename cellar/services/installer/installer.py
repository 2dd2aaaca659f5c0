"""单个包的安装编排器

一个 FormulaInstaller 负责一个包从检查到链接的完整流程:

    prelude_fetch -> prelude -> fetch -> install -> finish

- prelude_fetch: 弃用 / 禁用检查，需要浇注瓶子时拉取瓶子清单
- prelude: 严格展开依赖、策略检查、安装合理性与链接冲突检查（全部在任何文件系统变更之前）
- fetch: 把依赖与自身的产物加入会话下载队列
- install: 加锁、逐个嵌套安装依赖，然后浇注瓶子或源码构建
- finish: 链接、post_install、链接检查、写入回执、释放锁

依赖安装严格按拓扑顺序串行执行；嵌套安装复用同一个会话。
"""

from __future__ import annotations

import logging
import shutil
import time
from typing import TYPE_CHECKING, Any

from cellar.core.deps.dependency import DependencyEdge, PlatformProvidedDependency
from cellar.core.deps.expander import EdgeAction
from cellar.core.exceptions import (
    AlreadyAttemptedError,
    ArchitectureMismatchError,
    BottleManifestError,
    CannotInstallFormulaError,
    CellarError,
    CyclicDependencyError,
    DownloadError,
    FormulaConflictError,
    FormulaUnavailableError,
    PinnedDependencyError,
)
from cellar.core.formula import BuildOptions, Formula
from cellar.core.keg import BACKUP_SUFFIX
from cellar.core.receipt import InstallReceipt
from cellar.services.installer.checks import (
    forbidden_formula_check,
    forbidden_license_check,
    forbidden_tap_check,
)
from cellar.services.installer.models import (
    InstallOptions,
    InstallReport,
    InstallState,
    check_transition,
)
from cellar.services.installer.steps import InstallSteps, format_size
from cellar.utils.logger import formula_context

if TYPE_CHECKING:
    from cellar.services.session import InstallationSession
    from cellar.core.keg import Keg

logger = logging.getLogger(__name__)


class FormulaInstaller:
    """单个包的安装状态机"""

    def __init__(
        self,
        formula: Formula,
        session: InstallationSession,
        *,
        options: InstallOptions | None = None,
        installed_as_dependency: bool = False,
        installed_on_request: bool = True,
        link_keg: bool = False,
    ) -> None:
        self.formula = formula
        self.s = session
        self.options = options or InstallOptions()
        self.installed_as_dependency = installed_as_dependency
        self.installed_on_request = installed_on_request
        self.link_keg = not formula.keg_only or link_keg
        self.state = InstallState.CREATED
        self.report = InstallReport(name=formula.full_name)
        self.receipt: InstallReceipt | None = None
        self.bottle_manifest: dict[str, Any] | None = None
        self.steps = InstallSteps(session)

        formula.force_bottle = formula.force_bottle or self.options.force_bottle
        formula.build = BuildOptions(
            set(self.options.options) & set(formula.options), formula.options,
        )

        self._pour_bottle: bool | None = None
        self._ran_prelude_fetch = False
        self._ran_prelude = False
        self._bottle_runtime_deps: dict[str, dict[str, Any]] = {}
        self._bottle_os_version: str | None = None
        self._cache_key = f"FormulaInstaller-{formula.full_name}-{time.time()}"
        self._held_locks: list[str] = []

    def __repr__(self) -> str:
        return f"<FormulaInstaller {self.formula.full_name} {self.state.value}>"

    @property
    def ignore_deps(self) -> bool:
        return self.options.ignore_dependencies

    @property
    def only_deps(self) -> bool:
        return self.options.only_deps

    def _transition(self, target: InstallState) -> None:
        check_transition(self.state, target)
        logger.debug("%s: %s -> %s", self.formula.full_name, self.state.value, target.value)
        self.state = target

    def _fail(self) -> None:
        self.state = InstallState.FAILED

    # =====================================================================
    # 瓶子决策
    # =====================================================================

    def build_from_source(self, formula: Formula) -> bool:
        names = set(self.options.build_from_source)
        return formula.name in names or formula.full_name in names

    def pour_bottle(self, output_warning: bool = False) -> bool:
        """本包是否从瓶子安装，首次判定后缓存"""
        if self._pour_bottle is None:
            self._pour_bottle = self._decide_pour_bottle(output_warning)
        return self._pour_bottle

    def _decide_pour_bottle(self, output_warning: bool) -> bool:
        formula = self.formula
        tag = self.s.platform.tag
        if formula.local_bottle_path is None and not self.s.artifacts.has_artifact_for(formula, tag):
            return False

        if not formula.force_bottle:
            if self.build_from_source(formula) or self.options.interactive:
                return False
            if formula.build.used_options:
                return False

        reason = formula.pour_bottle_check_unsatisfied_reason
        if reason:
            if output_warning:
                logger.warning("%s 无法使用瓶子安装: %s", formula.full_name, reason)
            return False

        bottle = self.s.artifacts.bottle_for(formula, tag)
        if bottle is not None and not bottle.compatible_locations(self.s.layout.cellar):
            if output_warning:
                logger.warning(
                    "%s 的瓶子要求安装在 %s，当前为 %s，改为源码构建",
                    formula.full_name, bottle.cellar, self.s.layout.cellar,
                )
            return False
        return True

    def install_bottle_for(self, dep: Formula, build: BuildOptions) -> bool:
        """依赖（或本包）是否会从瓶子安装"""
        if dep.full_name == self.formula.full_name:
            return self.pour_bottle()
        if self.build_from_source(dep):
            return False
        tag = self.s.platform.tag
        if not self.s.artifacts.has_artifact_for(dep, tag):
            return False
        if not dep.can_pour_bottle():
            return False
        if build.used_options:
            return False
        bottle = self.s.artifacts.bottle_for(dep, tag)
        return bottle is None or bottle.compatible_locations(self.s.layout.cellar)

    def effective_build_options_for(self, dependent: Formula) -> BuildOptions:
        used = set(dependent.build.used_options)
        if dependent.full_name == self.formula.full_name:
            used |= set(self.options.options)
        keg = self.s.cellar.any_installed_keg(dependent)
        receipt = keg.receipt() if keg else None
        if receipt is not None:
            used |= set(receipt.used_options) & set(dependent.options)
        return BuildOptions(used, dependent.options)

    def display_options(self) -> list[str]:
        return [f"--{o}" for o in sorted(self.formula.build.used_options)]

    # =====================================================================
    # 依赖展开
    # =====================================================================

    def _edge_policy(self, dependent: Formula, dep: DependencyEdge) -> EdgeAction:
        """安装期策略: 剪除不需要的构建/测试依赖和系统已提供的依赖，跳过已满足的依赖"""
        # 系统提供时无需包定义，也不展开其依赖
        if (isinstance(dep, PlatformProvidedDependency)
                and dep.use_platform_install(self.s.platform, self._bottle_os_version)):
            return EdgeAction.PRUNE
        build = self.effective_build_options_for(dependent)

        keep_build_test = False
        if dep.test and dependent.full_name in self.options.include_test_formulae:
            keep_build_test = True
        elif (dep.build and not self.install_bottle_for(dependent, build)
              and not self.s.cellar.latest_version_installed(dependent)):
            keep_build_test = True

        if dep.prune_from_option(build):
            return EdgeAction.PRUNE
        if (dep.build or dep.test) and not keep_build_test:
            return EdgeAction.PRUNE

        try:
            dep_formula = self.s.loader.resolve(dep.name)
        except FormulaUnavailableError:
            return EdgeAction.KEEP

        # 瓶子清单中记录的运行期依赖版本是最低要求
        pin = self._bottle_runtime_deps.get(dep_formula.full_name) or {}
        if dep.satisfied(
            dep_formula, self.s.cellar,
            minimum_version=pin.get("version") or None,
            minimum_revision=pin.get("revision"),
            minimum_compatibility_version=pin.get("compatibility_version"),
            platform=self.s.platform,
            bottle_os_version=self._bottle_os_version,
        ):
            return EdgeAction.SKIP
        return EdgeAction.KEEP

    def compute_dependencies(self, *, use_cache: bool = True, strict: bool = False) -> list[DependencyEdge]:
        """需要安装的依赖（依赖在前）"""
        return self.s.expander.expand(
            self.formula, policy=self._edge_policy,
            cache_key=self._cache_key if use_cache else None,
            strict=strict,
        )

    def _recursive_formulae(self) -> list[Formula]:
        formulae = []
        for dep in self.s.expander.recursive_dependencies(self.formula):
            try:
                formulae.append(self.s.loader.resolve(dep.name))
            except FormulaUnavailableError:
                continue
        return formulae

    # =====================================================================
    # prelude
    # =====================================================================

    def prelude_fetch(self) -> None:
        """弃用/禁用检查，浇注时拉取瓶子清单"""
        if self._ran_prelude_fetch:
            return
        self._transition(InstallState.PRELUDE_FETCH)
        formula = self.formula
        try:
            if formula.disabled:
                reason = formula.disable_reason or "已禁用"
                if not self.options.force:
                    raise CannotInstallFormulaError(f"{formula.full_name} 已被禁用: {reason}")
                logger.warning("%s 已被禁用（%s），因 force 继续安装", formula.full_name, reason)
            elif formula.deprecated:
                logger.warning(
                    "%s 已弃用: %s", formula.full_name, formula.deprecation_reason or "无说明",
                )

            if self.pour_bottle(output_warning=True):
                self._fetch_bottle_manifest()

            if not self.ignore_deps:
                for dep in self.compute_dependencies():
                    if self.s.is_fetched(dep.name):
                        continue
                    try:
                        df = self.s.loader.resolve(dep.name)
                    except FormulaUnavailableError:
                        continue
                    options = self.options.for_dependency()
                    options.ignore_dependencies = True
                    try:
                        FormulaInstaller(
                            df, self.s, options=options, installed_as_dependency=True,
                        ).prelude_fetch()
                    except CellarError as e:
                        e.add_dependent(formula.full_name)
                        raise
        except BaseException:
            self._fail()
            raise
        self._ran_prelude_fetch = True

    def _fetch_bottle_manifest(self) -> None:
        formula = self.formula
        tag = self.s.platform.tag
        try:
            download = self.s.artifacts.manifest_download(formula, tag)
            if download is None:
                manifest = self.s.artifacts.fetch_manifest(formula, tag)
            else:
                self.s.queue.enqueue(download).result()
                manifest = self.s.artifacts.manifest_from(formula, download)
        except (DownloadError, BottleManifestError) as e:
            # 清单只用于减少依赖安装，拿不到时按完整依赖安装
            logger.warning("无法获取 %s 的瓶子清单: %s", formula.full_name, e)
            return

        self.bottle_manifest = manifest
        self._bottle_runtime_deps = {
            d["full_name"]: d for d in manifest.get("runtime_dependencies") or []
        }
        bottle = self.s.artifacts.bottle_for(formula, tag)
        built_on = manifest.get("built_on") or {}
        if bottle is not None and bottle.tag != "all" and built_on.get("os_version"):
            self._bottle_os_version = str(built_on["os_version"])

    def prelude(self) -> None:
        """依赖存在性校验与全部策略检查，失败时不做任何修改"""
        if not self._ran_prelude_fetch:
            self.prelude_fetch()
        self._transition(InstallState.PRELUDE)
        if self._ran_prelude:
            return
        formula = self.formula
        cfg = self.s.config
        try:
            self.s.receipts.clear_cache()
            if not self.ignore_deps:
                self.verify_deps_exist()

            deps = [] if self.ignore_deps else self._recursive_formulae()
            common = {
                "owner": cfg.forbidden_owner,
                "ignore_deps": self.ignore_deps,
                "only_deps": self.only_deps,
            }
            forbidden_license_check(formula, deps, forbidden_licenses=cfg.forbidden_licenses, **common)
            forbidden_tap_check(
                formula, deps,
                forbidden_taps=cfg.forbidden_taps, allowed_taps=cfg.allowed_taps, **common,
            )
            forbidden_formula_check(formula, deps, forbidden_formulae=cfg.forbidden_formulae, **common)
            self.check_install_sanity()
        except BaseException:
            self._fail()
            raise
        self._ran_prelude = True

    def verify_deps_exist(self) -> None:
        try:
            self.compute_dependencies(use_cache=False, strict=True)
        except FormulaUnavailableError as e:
            e.set_dependent(self.formula.full_name)
            raise

    def check_install_sanity(self) -> None:
        formula = self.formula
        if self.s.is_attempted(formula.full_name):
            raise AlreadyAttemptedError(formula.full_name)

        if formula.force_bottle and not self.pour_bottle():
            raise CannotInstallFormulaError(f"--force-bottle 指定的 {formula.full_name} 没有可用瓶子")

        if not self.options.force:
            self.check_conflicts()

        if self.ignore_deps:
            return

        self._check_cycles()

        platform = self.s.platform
        recursive = (
            self.s.expander.runtime_dependencies(formula)
            if self.pour_bottle()
            else self.s.expander.recursive_dependencies(formula)
        )
        invalid_arch: list[str] = []
        pinned: list[str] = []
        for dep in recursive:
            if isinstance(dep, PlatformProvidedDependency) and dep.use_platform_install(platform):
                continue
            try:
                df = self.s.loader.resolve(dep.name)
            except FormulaUnavailableError:
                continue
            keg = self.s.cellar.any_installed_keg(df)
            receipt = keg.receipt() if keg else None
            if receipt is not None and receipt.arch and receipt.arch != platform.arch:
                invalid_arch.append(f"{df.full_name} ({receipt.arch})")
            if self.s.cellar.pinned(df.name) and not dep.satisfied(df, self.s.cellar, platform=platform):
                keg_version = keg.pkg_version if keg else "未安装"
                pinned.append(f"{df.full_name} {keg_version}")

        if invalid_arch:
            raise ArchitectureMismatchError(
                f"{formula.full_name} 的依赖架构与当前平台 ({platform.arch}) 不符: "
                f"{', '.join(invalid_arch)}，请重装这些依赖"
            )
        if pinned:
            raise PinnedDependencyError(
                f"{formula.full_name} 需要升级以下已固定版本的依赖: {', '.join(pinned)}"
            )

    def _check_cycles(self) -> None:
        formula = self.formula
        names = {formula.name, formula.full_name}
        for dep in formula.deps:
            if dep.name in names:
                raise CyclicDependencyError(f"{formula.full_name} 直接依赖自身")
        for dep in formula.deps:
            try:
                df = self.s.loader.resolve(dep.name)
            except FormulaUnavailableError:
                continue
            if df.full_name in names:
                raise CyclicDependencyError(f"{formula.full_name} 直接依赖自身（经由别名 {dep.name}）")
            if any(d.name in names for d in self.s.expander.recursive_dependencies(df)):
                raise CyclicDependencyError(f"{formula.full_name} 经由 {df.full_name} 依赖自身")

    # =====================================================================
    # fetch
    # =====================================================================

    def fetch(self) -> None:
        """依赖与自身产物入队；同一会话内已入队过的包不重复处理"""
        formula = self.formula
        if self.s.is_fetched(formula.full_name):
            return
        self.fetch_dependencies()
        if self.only_deps:
            return
        self.s.mark_fetched(formula.full_name)
        if formula.local_bottle_path is not None:
            return

        artifacts = self.s.artifacts
        if self.pour_bottle():
            download = artifacts.bottle_download(formula, self.s.platform.tag)
            self.s.queue.enqueue(download, pour=True, extractor=artifacts.extract)
        elif formula.url:
            self.s.queue.enqueue(artifacts.source_download(formula))

    def fetch_dependencies(self) -> None:
        if self.ignore_deps:
            return
        deps = [d for d in self.compute_dependencies() if not self.s.is_fetched(d.name)]
        if not deps:
            return
        logger.info("获取 %s 的依赖: %s", self.formula.full_name, ", ".join(d.name for d in deps))
        for dep in deps:
            self.fetch_dependency(dep)

    def fetch_dependency(self, dep: DependencyEdge) -> None:
        df = self.s.loader.resolve(dep.name)
        options = self.options.for_dependency()
        # 已有完整的依赖展开；浇注瓶子时依赖树可能因清单而不同，需要再展开
        options.ignore_dependencies = not self.pour_bottle()
        fi = FormulaInstaller(df, self.s, options=options, installed_as_dependency=True)
        try:
            fi.prelude()
            fi.fetch()
        except CellarError as e:
            e.add_dependent(self.formula.full_name)
            raise

    # =====================================================================
    # install
    # =====================================================================

    def install(self) -> None:
        """安装依赖，然后浇注瓶子或源码构建"""
        if not self._ran_prelude:
            self.prelude()
        formula = self.formula
        self._transition(InstallState.DEPENDENCY_INSTALL)
        try:
            self._lock()
            if not self.ignore_deps:
                deps = self.compute_dependencies(use_cache=False)
                self.install_dependencies(deps)

            if self.only_deps:
                self._transition(InstallState.DONE)
                self._unlock()
                return

            self.s.mark_attempted(formula.full_name)
            self._transition(InstallState.ARTIFACT_ACQUISITION)
            if self.pour_bottle():
                self.receipt = self.steps.pour(self)
                self.report.poured = True
            else:
                self.receipt = self.steps.build(self)
        except BaseException:
            self._fail()
            self._unlock()
            raise

        if not self.s.cellar.latest_version_installed(formula):
            logger.warning("%s: 没有安装任何内容", formula.full_name)

    def _lock(self) -> None:
        names = [self.formula.full_name]
        if not self.ignore_deps:
            names += [d.name for d in self.s.expander.recursive_dependencies(self.formula)]
        self._held_locks = self.s.locks.acquire(names)

    def _unlock(self) -> None:
        if self._held_locks:
            self.s.locks.release(self._held_locks)
            self._held_locks = []

    def check_conflicts(self) -> None:
        conflicts = []
        for name in self.formula.conflicts:
            try:
                other = self.s.loader.resolve(name)
            except FormulaUnavailableError:
                logger.debug("%s 声明冲突的 %s 不存在，忽略", self.formula.full_name, name)
                continue
            if self.s.cellar.linked_keg(other.name) is not None and self.s.cellar.opt_prefix(other.name).exists():
                conflicts.append(other.full_name)
        if conflicts:
            raise FormulaConflictError(self.formula.full_name, conflicts)

    def install_dependencies(self, deps: list[DependencyEdge]) -> None:
        if not deps:
            if self.only_deps:
                logger.info("%s 的依赖全部已满足", self.formula.full_name)
            return
        logger.info("安装 %s 的依赖: %s", self.formula.full_name, ", ".join(d.name for d in deps))
        for dep in deps:
            self.install_dependency(dep)

    def install_dependency(self, dep: DependencyEdge) -> None:
        """嵌套安装一个依赖；已安装的旧版本先改名备份，失败时恢复"""
        df = self.s.loader.resolve(dep.name)
        if self.s.is_installed(df.full_name):
            return
        cellar = self.s.cellar

        linked_keg = cellar.linked_keg(df.name)
        had_linked_keg = linked_keg is not None and linked_keg.exists()
        keg_was_linked = False
        receipt = None
        if had_linked_keg:
            receipt = linked_keg.receipt()
            keg_was_linked = linked_keg.linked()
            linked_keg.unlink()

        installed_keg = tmp_keg = None
        if cellar.latest_version_installed(df):
            installed_keg = cellar.keg_for(df)
            receipt = receipt or installed_keg.receipt()
            tmp_path = installed_keg.path.with_name(installed_keg.path.name + BACKUP_SUFFIX)
            if not tmp_path.is_dir():
                tmp_keg = installed_keg.rename(tmp_path)

        used = set(receipt.used_options) if receipt else set()
        options = sorted((used | set(dep.option_tags)) & set(df.options))
        fi = FormulaInstaller(
            df, self.s,
            options=self.options.for_dependency(options),
            installed_as_dependency=True,
            installed_on_request=receipt.installed_on_request if receipt else False,
            link_keg=had_linked_keg and keg_was_linked,
        )
        try:
            with formula_context(df.full_name):
                fi.prelude()
                fi.install()
                fi.finish()
        except BaseException as e:
            if tmp_keg is not None and installed_keg is not None and not installed_keg.path.is_dir():
                tmp_keg.rename(installed_keg.path)
            if keg_was_linked and linked_keg is not None:
                try:
                    linked_keg.link()
                except CellarError as link_error:
                    logger.error("恢复 %s 的链接失败: %s", linked_keg.name, link_error)
            if isinstance(e, AlreadyAttemptedError):
                return
            if isinstance(e, CellarError):
                e.add_dependent(self.formula.full_name)
            raise
        else:
            if tmp_keg is not None and tmp_keg.path.is_dir():
                shutil.rmtree(tmp_keg.path)

    # =====================================================================
    # finish
    # =====================================================================

    def finish(self) -> None:
        """链接、post_install、写入回执；无论成败都释放锁"""
        if self.state is InstallState.DONE and self.only_deps:
            return
        formula = self.formula
        keg = self.s.cellar.keg_for(formula)
        try:
            self._transition(InstallState.LINK)
            try:
                if self.options.skip_link:
                    logger.info("按要求跳过 %s 的链接", formula.full_name)
                    keg.optlink()
                else:
                    self.steps.link(self, keg, self.report)
            except BaseException:
                keg.uninstall()
                raise

            self._transition(InstallState.FINISH)
            self.steps.post_install(self, keg, self.report)

            self._audit_linkage(keg)

            receipt = self.receipt or InstallReceipt.create(
                formula, platform=self.s.platform,
                installed_as_dependency=self.installed_as_dependency,
                installed_on_request=self.installed_on_request,
            )
            receipt.runtime_dependencies = self.runtime_dependency_records()
            self.s.receipts.write(receipt, keg.path)

            self.report.summary = self.summary()
            logger.info(self.report.summary)
            self.s.mark_installed(formula.full_name, self.report)
            self._transition(InstallState.DONE)
        except BaseException:
            self._fail()
            raise
        finally:
            self._unlock()

    def _audit_linkage(self, keg: Keg) -> None:
        """链接检查只作参考，审计器自身出错也不影响安装结果"""
        formula = self.formula
        try:
            issues = self.s.auditor.audit(keg)
        except Exception as e:
            message = f"{formula.full_name} 链接检查失败: {e}"
            logger.warning(message)
            self.report.warnings.append(message)
            return
        if issues:
            self.report.linkage_issues = issues
            logger.warning("%s 存在链接问题: %s", formula.full_name, "; ".join(issues))
        self.s.linkage_cache.update(keg, issues)

    def runtime_dependency_records(self) -> list[dict[str, Any]]:
        """安装完成后实际满足的运行期依赖"""
        declared = {d.name for d in self.formula.deps}
        records = []
        for dep in self.s.expander.runtime_dependencies(self.formula):
            if isinstance(dep, PlatformProvidedDependency) and dep.use_platform_install(self.s.platform):
                continue
            try:
                df = self.s.loader.resolve(dep.name)
            except FormulaUnavailableError:
                continue
            keg = self.s.cellar.any_installed_keg(df)
            pkg_version = keg.pkg_version if keg else df.pkg_version
            records.append({
                "full_name": df.full_name,
                "version": str(pkg_version.version),
                "revision": pkg_version.revision,
                "pkg_version": str(pkg_version),
                "declared_directly": dep.name in declared or df.name in declared,
                "compatibility_version": df.compatibility_version,
            })
        return records

    def summary(self) -> str:
        keg = self.s.cellar.keg_for(self.formula)
        count, size = keg.disk_usage() if keg.exists() else (0, 0)
        return f"{keg.path}: {count} files, {format_size(size)}"
