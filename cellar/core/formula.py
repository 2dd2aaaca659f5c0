"""包定义（Formula）数据模型

由外部加载器（FormulaRegistry）构造；安装引擎将其视为只读输入，
仅 build / local_bottle_path / force_bottle 三个字段在单次运行中被编排器修改。
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from cellar.core.versions import PkgVersion

if TYPE_CHECKING:
    from cellar.core.deps.dependency import DependencyEdge

CORE_TAP = "core"
ANY_CELLARS = ("any", "any_skip_relocation")


@dataclass(frozen=True)
class BottleSpec:
    """某个平台标签下的预构建产物"""

    tag: str
    url: str
    sha256: str = ""
    rebuild: int = 0
    cellar: str = "any"
    mirrors: tuple[str, ...] = ()
    manifest_url: str = ""
    manifest: dict[str, Any] | None = field(default=None, compare=False, hash=False)

    def compatible_locations(self, cellar_path: Path) -> bool:
        """瓶子要求的安装根与当前 Cellar 是否一致"""
        if self.cellar in ANY_CELLARS:
            return True
        return Path(self.cellar).expanduser() == cellar_path

    def filename(self, name: str, pkg_version: PkgVersion) -> str:
        """确定性缓存文件名: <name>--<pkg_version>.<tag>.bottle[.<rebuild>].tar.gz"""
        rebuild = f".{self.rebuild}" if self.rebuild else ""
        return f"{name}--{pkg_version}.{self.tag}.bottle{rebuild}.tar.gz"


class BuildOptions:
    """本次安装实际启用的构建选项"""

    def __init__(self, used: Iterable[str] = (), available: Iterable[str] = ()) -> None:
        self.used_options = frozenset(used)
        self.available = frozenset(available)

    def with_(self, dep: Any) -> bool:
        """依赖边是否被构建选项启用：推荐依赖默认启用，可选依赖默认关闭"""
        for name in dep.option_names:
            if dep.recommended:
                return f"without-{name}" not in self.used_options
            if dep.optional:
                return f"with-{name}" in self.used_options
        return True

    def without(self, dep: Any) -> bool:
        return not self.with_(dep)

    def __repr__(self) -> str:
        return f"BuildOptions(used={sorted(self.used_options)})"


@dataclass(eq=False)
class Formula:
    """一个可安装单元"""

    name: str
    version: str
    tap: str = CORE_TAP
    revision: int = 0
    compatibility_version: int | None = None
    description: str = ""
    aliases: list[str] = field(default_factory=list)
    oldnames: list[str] = field(default_factory=list)
    deps: list[DependencyEdge] = field(default_factory=list)
    options: list[str] = field(default_factory=list)
    license: str | dict[str, Any] | None = None
    url: str = ""
    sha256: str = ""
    mirrors: list[str] = field(default_factory=list)
    bottles: dict[str, BottleSpec] = field(default_factory=dict)
    keg_only: bool = False
    deprecated: bool = False
    deprecation_reason: str = ""
    disabled: bool = False
    disable_reason: str = ""
    conflicts: list[str] = field(default_factory=list)
    link_overwrite: list[str] = field(default_factory=list)
    install: list[str] = field(default_factory=list)
    post_install: list[str] = field(default_factory=list)
    pour_bottle_only_if: str = ""
    path: str = ""

    # 单次运行内可变
    build: BuildOptions = field(default_factory=BuildOptions)
    local_bottle_path: Path | None = None
    force_bottle: bool = False

    @property
    def full_name(self) -> str:
        if self.tap == CORE_TAP:
            return self.name
        return f"{self.tap}/{self.name}"

    @property
    def pkg_version(self) -> PkgVersion:
        return PkgVersion(self.version, self.revision)

    @property
    def possible_names(self) -> list[str]:
        return [self.name, *self.oldnames, *self.aliases]

    @property
    def post_install_defined(self) -> bool:
        return bool(self.post_install)

    @property
    def pour_bottle_check_unsatisfied_reason(self) -> str:
        return self.pour_bottle_only_if

    def can_pour_bottle(self) -> bool:
        """包自身的瓶子可用性判定（如要求特定系统组件）"""
        return not self.pour_bottle_only_if

    def bottle_for(self, tag: str) -> BottleSpec | None:
        return self.bottles.get(tag) or self.bottles.get("all")

    def bottled(self, tag: str) -> bool:
        return self.bottle_for(tag) is not None

    def __repr__(self) -> str:
        return f"<Formula {self.full_name} {self.pkg_version}>"

    def __str__(self) -> str:
        return self.full_name
