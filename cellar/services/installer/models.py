"""安装编排数据模型"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from cellar.core.config import Config
from cellar.core.exceptions import InvalidStateError


class InstallState(Enum):
    """单个包安装的状态机"""

    CREATED = "created"
    PRELUDE_FETCH = "prelude_fetch"
    PRELUDE = "prelude"
    DEPENDENCY_INSTALL = "dependency_install"
    ARTIFACT_ACQUISITION = "artifact_acquisition"
    LINK = "link"
    FINISH = "finish"
    DONE = "done"
    FAILED = "failed"


# 合法迁移；FAILED 可从任意状态进入
_TRANSITIONS: dict[InstallState, frozenset[InstallState]] = {
    InstallState.CREATED: frozenset({InstallState.PRELUDE_FETCH, InstallState.PRELUDE}),
    InstallState.PRELUDE_FETCH: frozenset({InstallState.PRELUDE}),
    InstallState.PRELUDE: frozenset({InstallState.PRELUDE, InstallState.DEPENDENCY_INSTALL}),
    InstallState.DEPENDENCY_INSTALL: frozenset({InstallState.ARTIFACT_ACQUISITION, InstallState.DONE}),
    InstallState.ARTIFACT_ACQUISITION: frozenset({InstallState.LINK}),
    InstallState.LINK: frozenset({InstallState.FINISH}),
    InstallState.FINISH: frozenset({InstallState.DONE}),
    InstallState.DONE: frozenset(),
    InstallState.FAILED: frozenset(),
}


def check_transition(current: InstallState, target: InstallState) -> None:
    if target is InstallState.FAILED:
        return
    if target not in _TRANSITIONS[current]:
        raise InvalidStateError(f"非法状态迁移: {current.value} -> {target.value}")


class OutcomeStatus(str, Enum):
    INSTALLED = "installed"
    ALREADY_SATISFIED = "already_satisfied"
    FETCHED = "fetched"
    FAILED = "failed"


@dataclass
class InstallOutcome:
    """批量安装中单个包的结果"""

    name: str
    status: OutcomeStatus
    reason: str = ""

    @property
    def ok(self) -> bool:
        return self.status is not OutcomeStatus.FAILED

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "status": self.status.value, "reason": self.reason}


@dataclass
class InstallOptions:
    """单次安装的行为开关（来自配置与命令行）"""

    force: bool = False
    force_bottle: bool = False
    build_from_source: list[str] = field(default_factory=list)
    ignore_dependencies: bool = False
    only_deps: bool = False
    include_test_formulae: list[str] = field(default_factory=list)
    interactive: bool = False
    skip_post_install: bool = False
    skip_link: bool = False
    overwrite: bool = False
    options: list[str] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: Config) -> InstallOptions:
        return cls(
            force=cfg.force,
            force_bottle=cfg.force_bottle,
            build_from_source=list(cfg.build_from_source),
            ignore_dependencies=cfg.ignore_dependencies,
            only_deps=cfg.only_deps,
            include_test_formulae=list(cfg.include_test_formulae),
            interactive=cfg.interactive,
            skip_post_install=cfg.skip_post_install,
            skip_link=cfg.skip_link,
            overwrite=cfg.overwrite,
        )

    def for_dependency(self, options: list[str] | None = None) -> InstallOptions:
        """嵌套安装依赖时使用：不继承 force_bottle / only_deps / 选项"""
        return InstallOptions(
            force=self.force,
            build_from_source=list(self.build_from_source),
            include_test_formulae=list(self.include_test_formulae),
            skip_post_install=self.skip_post_install,
            overwrite=self.overwrite,
            options=list(options or []),
        )


@dataclass
class InstallReport:
    """单个包安装过程的记录"""

    name: str
    poured: bool = False
    degraded: bool = False
    linked_files: int = 0
    backups: dict[str, str] = field(default_factory=dict)
    linkage_issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    summary: str = ""
