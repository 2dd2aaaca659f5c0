"""YAML tap 注册表：FormulaLoader 的参考实现

每个 tap 一个文件 <taps_dir>/<tap>.yml:

    formulae:
      lib:
        version: "1.0"
        url: https://example.com/lib-1.0.tar.gz
        sha256: ...
        deps:
          - zlib
          - {name: pkgconf, tags: [build]}
          - {name: libiconv, platform: macos, since: "11"}
        bottles:
          x86_64_linux: {url: ..., sha256: ..., rebuild: 0, cellar: any}
        install:
          - make install PREFIX="$PREFIX"
    renames:
      oldlib: lib
    migrations:
      legacy: othertap
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from cellar.core.deps.dependency import Dependency, DependencyEdge, PlatformProvidedDependency
from cellar.core.exceptions import AmbiguousFormulaError, FormulaUnavailableError, ValidationError
from cellar.core.formula import CORE_TAP, BottleSpec, Formula
from cellar.utils.fileio import load_yaml

logger = logging.getLogger(__name__)

_MAX_RENAME_DEPTH = 10


class FormulaRegistry:
    """从 YAML tap 文件加载包定义，每次 resolve 返回新实例"""

    def __init__(self, taps: dict[str, dict[str, Any]] | None = None) -> None:
        self._taps: dict[str, dict[str, Any]] = taps or {}

    @classmethod
    def from_dir(cls, taps_dir: str | Path) -> FormulaRegistry:
        """加载目录下全部 *.yml，文件名即 tap 名"""
        root = Path(taps_dir)
        taps: dict[str, dict[str, Any]] = {}
        if not root.is_dir():
            logger.warning("tap 目录不存在: %s", root)
            return cls(taps)
        for path in sorted(root.glob("*.yml")):
            taps[path.stem] = load_yaml(path)
        logger.info("已加载 %d 个 tap: %s", len(taps), ", ".join(taps))
        return cls(taps)

    @property
    def taps(self) -> list[str]:
        return list(self._taps)

    def _formulae(self, tap: str) -> dict[str, Any]:
        return self._taps.get(tap, {}).get("formulae") or {}

    def _find_alias(self, tap: str, name: str) -> str | None:
        for fname, info in self._formulae(tap).items():
            if name in ((info or {}).get("aliases") or []):
                return fname
        return None

    # =====================================================================
    # FormulaLoader 协议
    # =====================================================================

    def rename_of(self, name: str) -> str | None:
        tap, _, short = name.rpartition("/")
        taps = [tap] if tap else self.taps
        for t in taps:
            renames = self._taps.get(t, {}).get("renames") or {}
            if short in renames:
                new = renames[short]
                return f"{t}/{new}" if tap else new
        return None

    def tap_migration_of(self, name: str) -> str | None:
        tap, _, short = name.rpartition("/")
        taps = [tap] if tap else self.taps
        for t in taps:
            migrations = self._taps.get(t, {}).get("migrations") or {}
            if short in migrations:
                return migrations[short]
        return None

    def resolve(self, name: str) -> Formula:
        original = name
        for _ in range(_MAX_RENAME_DEPTH):
            found = self._lookup(name)
            if found is not None:
                tap, fname = found
                return self._build(tap, fname, self._formulae(tap)[fname] or {})
            renamed = self.rename_of(name)
            if renamed is None:
                break
            logger.info("%s 已改名为 %s", name, renamed)
            name = renamed
        migration = self.tap_migration_of(original)
        if migration:
            logger.warning("%s 已迁移到 tap %s", original, migration)
        raise FormulaUnavailableError(original)

    def _lookup(self, name: str) -> tuple[str, str] | None:
        tap, _, short = name.rpartition("/")
        if tap:
            if short in self._formulae(tap):
                return tap, short
            alias = self._find_alias(tap, short)
            return (tap, alias) if alias else None

        hits = [t for t in self.taps if short in self._formulae(t)]
        if not hits:
            hits_alias: list[tuple[str, str]] = []
            for t in self.taps:
                alias = self._find_alias(t, short)
                if alias:
                    hits_alias.append((t, alias))
            if len(hits_alias) > 1:
                raise AmbiguousFormulaError(short, [t for t, _ in hits_alias])
            return hits_alias[0] if hits_alias else None
        if len(hits) > 1:
            raise AmbiguousFormulaError(short, hits)
        return hits[0], short

    # =====================================================================
    # 构造 Formula
    # =====================================================================

    def _build(self, tap: str, name: str, info: dict[str, Any]) -> Formula:
        if "version" not in info:
            raise ValidationError(f"包 {tap}/{name} 缺少 version 字段")
        full_name = name if tap == CORE_TAP else f"{tap}/{name}"
        bottles = {
            tag: BottleSpec(
                tag=tag,
                url=spec["url"],
                sha256=spec.get("sha256", ""),
                rebuild=int(spec.get("rebuild", 0)),
                cellar=spec.get("cellar", "any"),
                mirrors=tuple(spec.get("mirrors") or ()),
                manifest_url=spec.get("manifest_url", ""),
                manifest=spec.get("manifest"),
            )
            for tag, spec in (info.get("bottles") or {}).items()
        }
        return Formula(
            name=name,
            version=str(info["version"]),
            tap=tap,
            revision=int(info.get("revision", 0)),
            compatibility_version=info.get("compatibility_version"),
            description=info.get("desc", ""),
            aliases=list(info.get("aliases") or []),
            oldnames=[old for old, new in (self._taps[tap].get("renames") or {}).items() if new == name],
            deps=[_parse_dep(d, full_name) for d in info.get("deps") or []],
            options=list(info.get("options") or []),
            license=info.get("license"),
            url=info.get("url", ""),
            sha256=info.get("sha256", ""),
            mirrors=list(info.get("mirrors") or []),
            bottles=bottles,
            keg_only=bool(info.get("keg_only", False)),
            deprecated=bool(info.get("deprecated", False)),
            deprecation_reason=info.get("deprecation_reason", ""),
            disabled=bool(info.get("disabled", False)),
            disable_reason=info.get("disable_reason", ""),
            conflicts=list(info.get("conflicts") or []),
            link_overwrite=list(info.get("link_overwrite") or []),
            install=list(info.get("install") or []),
            post_install=list(info.get("post_install") or []),
            pour_bottle_only_if=info.get("pour_bottle_only_if", ""),
            path=f"{tap}.yml",
        )


def _parse_dep(entry: str | dict[str, Any], declaring: str) -> DependencyEdge:
    if isinstance(entry, str):
        return Dependency(entry, declaring_package=declaring)
    if not isinstance(entry, dict) or not entry.get("name"):
        raise ValidationError(f"{declaring} 的依赖声明无效: {entry!r}")
    tags = frozenset(entry.get("tags") or ())
    if entry.get("platform"):
        since = entry.get("since")
        return PlatformProvidedDependency(
            entry["name"], tags,
            platform=entry["platform"],
            since=str(since) if since is not None else None,
            declaring_package=declaring,
        )
    return Dependency(entry["name"], tags, declaring_package=declaring)
