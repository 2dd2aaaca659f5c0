"""依赖边数据模型

两种依赖变体（DependencyEdge）提供同样的 satisfied / installed 接口:
- Dependency: 对另一个包的普通依赖
- PlatformProvidedDependency: 平台版本足够新时由操作系统直接提供

两者都是不可变值类型，相等性按 (name, tags) 计算；
合并重复依赖时产生新实例，从不原地修改。
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Iterable, Union

from cellar.core.versions import PkgVersion, Version

if TYPE_CHECKING:
    from cellar.core.formula import BuildOptions, Formula
    from cellar.core.keg import Cellar
    from cellar.core.platform import Platform


class Tag(str, Enum):
    """依赖边修饰标签，其余任意字符串标签视为选项名"""

    BUILD = "build"
    OPTIONAL = "optional"
    RECOMMENDED = "recommended"
    TEST = "test"
    IMPLICIT = "implicit"


RESERVED_TAGS = frozenset(t.value for t in Tag)


def normalize_tags(tags: Iterable[str]) -> frozenset[str]:
    return frozenset(t.value if isinstance(t, Tag) else str(t) for t in tags)


class _TagPredicates:
    """按标签判断边类型，两种依赖变体共用"""

    tags: frozenset[str]
    name: str

    @property
    def build(self) -> bool:
        return Tag.BUILD.value in self.tags

    @property
    def optional(self) -> bool:
        return Tag.OPTIONAL.value in self.tags

    @property
    def recommended(self) -> bool:
        return Tag.RECOMMENDED.value in self.tags

    @property
    def test(self) -> bool:
        return Tag.TEST.value in self.tags

    @property
    def implicit(self) -> bool:
        return Tag.IMPLICIT.value in self.tags

    @property
    def required(self) -> bool:
        return not (self.build or self.test or self.optional or self.recommended)

    @property
    def option_tags(self) -> list[str]:
        return sorted(t for t in self.tags if t not in RESERVED_TAGS)

    @property
    def option_names(self) -> list[str]:
        return [self.name.split("/")[-1]]

    def prune_from_option(self, build: BuildOptions) -> bool:
        """可选/推荐依赖在构建选项未启用时应被剪除"""
        if not (self.optional or self.recommended):
            return False
        return not build.with_(self)


@dataclass(frozen=True)
class Dependency(_TagPredicates):
    """对另一个包的依赖"""

    name: str
    tags: frozenset[str] = frozenset()
    declaring_package: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("依赖必须有名称")
        object.__setattr__(self, "tags", normalize_tags(self.tags))

    @property
    def provided_by_platform(self) -> bool:
        return False

    def with_name(self, name: str) -> Dependency:
        return replace(self, name=name)

    def with_tags(self, tags: Iterable[str]) -> Dependency:
        return replace(self, tags=normalize_tags(tags))

    def installed(
        self, formula: Formula | None, cellar: Cellar, *,
        minimum_version: str | None = None,
        minimum_revision: int | None = None,
        minimum_compatibility_version: int | None = None,
        platform: Platform | None = None,
        bottle_os_version: str | None = None,
    ) -> bool:
        return _formula_installed(
            formula, cellar,
            minimum_version=minimum_version,
            minimum_revision=minimum_revision,
            minimum_compatibility_version=minimum_compatibility_version,
        )

    def satisfied(
        self, formula: Formula | None, cellar: Cellar, *,
        minimum_version: str | None = None,
        minimum_revision: int | None = None,
        minimum_compatibility_version: int | None = None,
        platform: Platform | None = None,
        bottle_os_version: str | None = None,
    ) -> bool:
        if not self.installed(
            formula, cellar,
            minimum_version=minimum_version,
            minimum_revision=minimum_revision,
            minimum_compatibility_version=minimum_compatibility_version,
            platform=platform,
            bottle_os_version=bottle_os_version,
        ):
            return False
        return not missing_options(self, formula, cellar)

    def __repr__(self) -> str:
        return f"<Dependency {self.name!r} {sorted(self.tags)}>"

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class PlatformProvidedDependency(_TagPredicates):
    """平台提供的依赖：平台版本 >= since 时视为已满足，无需安装

    since 为空表示在该平台上总是由系统提供。
    """

    name: str
    tags: frozenset[str] = frozenset()
    platform: str = "macos"
    since: str | None = None
    declaring_package: str | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("依赖必须有名称")
        object.__setattr__(self, "tags", normalize_tags(self.tags))

    @property
    def provided_by_platform(self) -> bool:
        return True

    @property
    def bounds(self) -> dict[str, str]:
        return {"since": self.since} if self.since else {}

    def with_name(self, name: str) -> PlatformProvidedDependency:
        return replace(self, name=name)

    def with_tags(self, tags: Iterable[str]) -> PlatformProvidedDependency:
        return replace(self, tags=normalize_tags(tags))

    def use_platform_install(
        self, platform: Platform | None, bottle_os_version: str | None = None,
    ) -> bool:
        """当前平台（或瓶子构建时的系统版本）是否已提供该依赖"""
        if platform is None or platform.os != self.platform:
            return False
        if not self.since:
            return True
        # 安装旧系统上构建的瓶子时，以瓶子的构建系统版本为准
        effective = bottle_os_version or platform.os_version
        return Version(effective) >= Version(self.since)

    def installed(
        self, formula: Formula | None, cellar: Cellar, *,
        minimum_version: str | None = None,
        minimum_revision: int | None = None,
        minimum_compatibility_version: int | None = None,
        platform: Platform | None = None,
        bottle_os_version: str | None = None,
    ) -> bool:
        if self.use_platform_install(platform, bottle_os_version):
            return True
        return _formula_installed(
            formula, cellar,
            minimum_version=minimum_version,
            minimum_revision=minimum_revision,
            minimum_compatibility_version=minimum_compatibility_version,
        )

    def satisfied(
        self, formula: Formula | None, cellar: Cellar, *,
        minimum_version: str | None = None,
        minimum_revision: int | None = None,
        minimum_compatibility_version: int | None = None,
        platform: Platform | None = None,
        bottle_os_version: str | None = None,
    ) -> bool:
        if self.use_platform_install(platform, bottle_os_version):
            return True
        if not _formula_installed(
            formula, cellar,
            minimum_version=minimum_version,
            minimum_revision=minimum_revision,
            minimum_compatibility_version=minimum_compatibility_version,
        ):
            return False
        return not missing_options(self, formula, cellar)

    def __repr__(self) -> str:
        return f"<PlatformProvidedDependency {self.name!r} {sorted(self.tags)} {self.bounds}>"

    def __str__(self) -> str:
        return self.name


DependencyEdge = Union[Dependency, PlatformProvidedDependency]


def _formula_installed(
    formula: Formula | None, cellar: Cellar, *,
    minimum_version: str | None,
    minimum_revision: int | None,
    minimum_compatibility_version: int | None,
) -> bool:
    """按版本 / 修订号 / 兼容版本判断已安装的依赖是否足够新"""
    if formula is None:
        return False

    # opt 链接缺失通常意味着上次安装不完整
    if not cellar.opt_prefix(formula.name).exists():
        return False

    if cellar.latest_version_installed(formula):
        return True

    if not minimum_version:
        return False

    installed_keg = cellar.any_installed_keg(formula)
    if installed_keg is None:
        return False

    # keg 名与包名不符：可能从别名迁移到了正式包，需要升级
    if installed_keg.name not in formula.possible_names:
        return False

    installed_version = installed_keg.pkg_version

    if minimum_compatibility_version is not None and formula.compatibility_version is not None:
        receipt = installed_keg.receipt()
        installed_compat = receipt.compatibility_version if receipt else None
        if (installed_compat == minimum_compatibility_version
                and formula.compatibility_version == minimum_compatibility_version):
            return True

    minimum = Version(minimum_version)
    if minimum_revision is not None:
        return installed_version >= PkgVersion(minimum, minimum_revision)
    if installed_version.version == minimum:
        return formula.revision == 0
    return installed_version.version > minimum


def missing_options(dep: DependencyEdge, formula: Formula | None, cellar: Cellar) -> list[str]:
    """依赖边要求、包支持、但已安装版本未启用的选项"""
    if formula is None:
        return []
    required = [o for o in dep.option_tags if o in formula.options]
    if not required:
        return []
    keg = cellar.any_installed_keg(formula)
    receipt = keg.receipt() if keg else None
    used = set(receipt.used_options) if receipt else set()
    return [o for o in required if o not in used]
