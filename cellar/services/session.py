"""安装会话

一次批量安装 / 获取的上下文，取代全局状态。持有:
- 注册表: 本次已尝试 / 已安装 / 已获取的包（全名），以及按完成顺序的结果
- 锁管理器、下载队列、依赖展开器与缓存、Cellar 索引
- 外部协作者: 包加载器、产物存储、构建器、链接审计器、回执存储

install 的三个阶段:
1. 每个根包 prelude_fetch -> prelude -> fetch，策略检查先于任何下载，下载并发进行
2. 等待下载队列排空
3. 每个根包按拓扑顺序 install -> finish，依赖在此过程中嵌套安装
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Iterable

from rich.console import Console

from cellar.core.config import Config
from cellar.core.deps.cache import ExpansionCache
from cellar.core.deps.expander import DependencyExpander
from cellar.core.exceptions import AlreadyAttemptedError, CellarError, PolicyError
from cellar.core.formula import Formula
from cellar.core.keg import Cellar
from cellar.core.layout import Layout
from cellar.core.lock import LockManager
from cellar.core.platform import Platform
from cellar.core.protocols import ArtifactStore, FormulaLoader, LinkageAuditor, ReceiptStore, SandboxedBuilder
from cellar.core.receipt import JsonReceiptStore
from cellar.download.queue import DownloadQueue
from cellar.services.artifacts import TarballArtifactStore
from cellar.services.builder import SubprocessBuilder
from cellar.services.installer.installer import FormulaInstaller
from cellar.services.installer.models import InstallOptions, InstallOutcome, InstallReport, OutcomeStatus
from cellar.services.installer.steps import KegBackup
from cellar.services.linkage import LinkageCache, SymlinkLinkageAuditor
from cellar.utils.logger import formula_context
from cellar.utils.shell import CommandExecutor, LocalExecutor

logger = logging.getLogger(__name__)


class InstallationSession:
    """批量安装上下文"""

    def __init__(
        self,
        config: Config,
        *,
        loader: FormulaLoader,
        layout: Layout | None = None,
        artifacts: ArtifactStore | None = None,
        builder: SandboxedBuilder | None = None,
        auditor: LinkageAuditor | None = None,
        receipts: ReceiptStore | None = None,
        platform: Platform | None = None,
        console: Console | None = None,
        executor: CommandExecutor | None = None,
        options: InstallOptions | None = None,
        force_fetch: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.options = options or InstallOptions.from_config(config)
        self.loader = loader
        self.layout = layout or Layout.from_config(config)
        self.layout.ensure()
        self.receipts = receipts or JsonReceiptStore()
        self.artifacts = artifacts or TarballArtifactStore(self.layout)
        self.executor = executor or LocalExecutor()
        self.builder = builder or SubprocessBuilder(self.executor, timeout=config.extra.get("build_timeout"))
        self.auditor = auditor or SymlinkLinkageAuditor()
        self.platform = platform or Platform.current(
            os_name=config.platform_os, os_version=config.platform_version, arch=config.arch,
        )
        self.cellar = Cellar(self.layout, self.receipts)
        self.expander = DependencyExpander(loader, ExpansionCache())
        self.queue = DownloadQueue(
            config.fetch_concurrency, config.fetch_retries, force_fetch,
            timeout=config.fetch_timeout, console=console, sleep=sleep,
        )
        self.locks = LockManager(self.layout.locks_dir)
        self.linkage_cache = LinkageCache(self.layout.linkage_cache)

        self._mutex = threading.RLock()
        self._attempted: set[str] = set()
        self._installed: set[str] = set()
        self._fetched: set[str] = set()
        self._outcomes: list[InstallOutcome] = []
        self.reports: dict[str, InstallReport] = {}

    # =====================================================================
    # 注册表
    # =====================================================================

    def is_attempted(self, name: str) -> bool:
        with self._mutex:
            return name in self._attempted

    def mark_attempted(self, name: str) -> None:
        with self._mutex:
            self._attempted.add(name)

    def is_installed(self, name: str) -> bool:
        with self._mutex:
            return name in self._installed

    def mark_installed(self, name: str, report: InstallReport | None = None) -> None:
        reason = "已安装但未完成链接" if report is not None and report.degraded else ""
        with self._mutex:
            self._installed.add(name)
            if report is not None:
                self.reports[name] = report
            self._outcomes.append(InstallOutcome(name, OutcomeStatus.INSTALLED, reason))

    def is_fetched(self, name: str) -> bool:
        with self._mutex:
            return name in self._fetched

    def mark_fetched(self, name: str) -> None:
        with self._mutex:
            self._fetched.add(name)

    @property
    def outcomes(self) -> list[InstallOutcome]:
        with self._mutex:
            return list(self._outcomes)

    def _record(self, outcome: InstallOutcome) -> None:
        with self._mutex:
            self._outcomes.append(outcome)

    def _record_failure(self, name: str, error: BaseException) -> None:
        if isinstance(error, CellarError):
            logger.error("%s 安装失败: %s", name, error)
        else:
            logger.error("%s 安装时发生意外错误: %s", name, error, exc_info=error)
        self._record(InstallOutcome(name, OutcomeStatus.FAILED, str(error)))

    # =====================================================================
    # 批量操作
    # =====================================================================

    def resolve(self, name: str) -> Formula:
        return self.loader.resolve(name)

    def _resolve_all(self, names: Iterable[str]) -> list[Formula]:
        formulae: list[Formula] = []
        seen: set[str] = set()
        for name in names:
            try:
                formula = self.resolve(name)
            except CellarError as e:
                self._record_failure(name, e)
                continue
            if formula.full_name in seen:
                continue
            seen.add(formula.full_name)
            formulae.append(formula)
        return formulae

    def order_roots(self, roots: list[Formula]) -> list[Formula]:
        """请求的包之间按依赖关系排序，被依赖者在前；无依赖关系时保持原顺序"""
        by_name = {f.full_name: f for f in roots}
        requires: dict[str, list[str]] = {}
        for formula in roots:
            dep_names = {d.name for d in self.expander.recursive_dependencies(formula)}
            requires[formula.full_name] = [
                n for n in by_name if n in dep_names and n != formula.full_name
            ]

        ordered: list[Formula] = []
        done: set[str] = set()
        visiting: set[str] = set()

        def visit(name: str) -> None:
            if name in done or name in visiting:
                return
            visiting.add(name)
            for dep in requires[name]:
                visit(dep)
            visiting.discard(name)
            done.add(name)
            ordered.append(by_name[name])

        for formula in roots:
            visit(formula.full_name)
        return ordered

    def _satisfied(self, formula: Formula) -> bool:
        return (
            self.cellar.latest_version_installed(formula)
            and self.cellar.opt_prefix(formula.name).exists()
        )

    def _abort(self, error: PolicyError) -> None:
        logger.error("策略检查未通过，中止本批安装: %s", error)
        self.locks.release()

    def install(self, names: Iterable[str], *, reinstall: bool = False) -> list[InstallOutcome]:
        """批量安装，返回本次调用产生的结果（按完成顺序，包含途中安装的依赖）"""
        start = len(self.outcomes)
        roots = self.order_roots(self._resolve_all(names))

        installers: list[FormulaInstaller] = []
        for formula in roots:
            if not reinstall and not self.options.only_deps and self._satisfied(formula):
                logger.info("%s %s 已安装", formula.full_name, formula.pkg_version)
                self._record(InstallOutcome(formula.full_name, OutcomeStatus.ALREADY_SATISFIED))
                continue
            fi = FormulaInstaller(formula, self, options=self.options, installed_on_request=True)
            try:
                with formula_context(formula.full_name):
                    fi.prelude_fetch()
                    fi.prelude()
                    fi.fetch()
            except AlreadyAttemptedError:
                logger.debug("%s 本次运行已尝试过，跳过", formula.full_name)
                continue
            except PolicyError as e:
                if not e.dependents:
                    self._abort(e)
                    raise
                self._record_failure(formula.full_name, e)
                continue
            except Exception as e:
                self._record_failure(formula.full_name, e)
                continue
            installers.append(fi)

        self.queue.run_to_completion()

        for fi in installers:
            name = fi.formula.full_name
            if self.is_installed(name):
                continue
            backup = None
            if reinstall and self.cellar.latest_version_installed(fi.formula):
                backup = KegBackup.create(self.cellar, fi.formula)
            try:
                with formula_context(name):
                    fi.install()
                    fi.finish()
            except AlreadyAttemptedError:
                if backup is not None:
                    backup.restore()
                continue
            except Exception as e:
                # 策略检查都在第一阶段完成，这里已有包落盘，只记录失败不中止整批
                if backup is not None:
                    backup.restore()
                self._record_failure(name, e)
            else:
                if backup is not None:
                    backup.discard()

        return self.outcomes[start:]

    def fetch(self, names: Iterable[str]) -> list[InstallOutcome]:
        """只执行检查与下载，不安装"""
        start = len(self.outcomes)
        fetched: list[Formula] = []
        for formula in self._resolve_all(names):
            fi = FormulaInstaller(formula, self, options=self.options)
            try:
                fi.prelude_fetch()
                fi.prelude()
                fi.fetch()
            except CellarError as e:
                self._record_failure(formula.full_name, e)
                continue
            fetched.append(formula)

        failed: dict[str, BaseException] = {}
        for downloadable, error in self.queue.run_to_completion():
            # 清单下载失败可以容忍
            if downloadable.download_type == "manifest":
                continue
            failed.setdefault(downloadable.name, error)

        roots = {f.full_name for f in fetched}
        for name, error in failed.items():
            if name not in roots:
                self._record(InstallOutcome(name, OutcomeStatus.FAILED, str(error)))
        for formula in fetched:
            error = failed.get(formula.full_name)
            if error is not None:
                self._record(InstallOutcome(formula.full_name, OutcomeStatus.FAILED, str(error)))
            else:
                self._record(InstallOutcome(formula.full_name, OutcomeStatus.FETCHED))
        return self.outcomes[start:]

    # =====================================================================
    # 生命周期
    # =====================================================================

    def clear(self) -> None:
        """清空注册表与依赖展开缓存（带时间戳的条目保留）"""
        with self._mutex:
            self._attempted.clear()
            self._installed.clear()
            self._fetched.clear()
        self.expander.cache.clear()
        self.receipts.clear_cache()

    def close(self) -> None:
        self.queue.shutdown()
        self.locks.release()
        self.clear()

    def __enter__(self) -> InstallationSession:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()
