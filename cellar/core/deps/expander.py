"""依赖图展开

对一个包的依赖边做深度优先展开，得到去重、无环、依赖在前的有序列表。

每条边交给策略函数判断动作（EdgeAction）:
- PRUNE: 丢弃该边，不再递归
- SKIP: 丢弃该边本身，但继续展开目标包的依赖
- KEEP_BUT_PRUNE_RECURSIVE: 保留该边，不展开其依赖
- KEEP: 先展开目标包的依赖（后序），再追加改名为规范全名的该边

环检测使用每次调用独立的访问栈：目标已在栈上时只在当前分支丢弃，
经由其他无环路径仍可出现。
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Callable, Hashable, Optional, Sequence

from cellar.core.deps.cache import ExpansionCache
from cellar.core.deps.dependency import DependencyEdge, Tag
from cellar.core.exceptions import FormulaUnavailableError

if TYPE_CHECKING:
    from cellar.core.formula import Formula
    from cellar.core.protocols import FormulaLoader

logger = logging.getLogger(__name__)


class EdgeAction(Enum):
    PRUNE = "prune"
    SKIP = "skip"
    KEEP_BUT_PRUNE_RECURSIVE = "keep_but_prune_recursive"
    KEEP = "keep"


# (dependent, dependency) -> 动作，返回 None 视为 KEEP
EdgePolicy = Callable[["Formula", DependencyEdge], Optional[EdgeAction]]


def default_policy(dependent: Formula, dep: DependencyEdge) -> EdgeAction:
    """未被构建选项启用的可选/推荐依赖剪除，其余保留"""
    if dep.prune_from_option(dependent.build):
        return EdgeAction.PRUNE
    return EdgeAction.KEEP


def runtime_policy(dependent: Formula, dep: DependencyEdge) -> EdgeAction:
    """运行期依赖：额外剪除构建期与测试期依赖"""
    if dep.build or dep.test:
        return EdgeAction.PRUNE
    return default_policy(dependent, dep)


def merge_repeats(deps: Sequence[DependencyEdge]) -> list[DependencyEdge]:
    """同名依赖合并为一条，保持首次出现的顺序

    必要性: 任一无条件必需 -> 无 optional/recommended 标记；
            否则任一 recommended -> recommended；否则 optional
    时间性: 全部为 build 才保留 build，全部为 implicit 才保留 implicit
    选项标签取并集，任一带 test 则保留 test
    """
    grouped: dict[str, list[DependencyEdge]] = {}
    for dep in deps:
        grouped.setdefault(dep.name, []).append(dep)

    merged: list[DependencyEdge] = []
    for group in grouped.values():
        first = group[0]
        if len(group) == 1:
            merged.append(first)
            continue
        tags: set[str] = set()
        for dep in group:
            tags.update(dep.option_tags)
        if any(dep.test for dep in group):
            tags.add(Tag.TEST.value)

        if any(not dep.recommended and not dep.optional for dep in group):
            pass
        elif any(dep.recommended for dep in group):
            tags.add(Tag.RECOMMENDED.value)
        else:
            tags.add(Tag.OPTIONAL.value)

        if all(dep.build for dep in group):
            tags.add(Tag.BUILD.value)
        if all(dep.implicit for dep in group):
            tags.add(Tag.IMPLICIT.value)

        merged.append(first.with_tags(tags))
    return merged


def _cache_id(dependent: Formula) -> str:
    return f"{dependent.full_name}_{type(dependent).__name__}"


class DependencyExpander:
    """依赖图展开器

    名称到包定义的解析委托给 FormulaLoader；结果可按 (cache_key, timestamp) 缓存。
    """

    def __init__(self, loader: FormulaLoader, cache: ExpansionCache | None = None) -> None:
        self.loader = loader
        self.cache = cache if cache is not None else ExpansionCache()

    def expand(
        self,
        root: Formula,
        edges: Sequence[DependencyEdge] | None = None,
        policy: EdgePolicy | None = None,
        *,
        cache_key: str | None = None,
        cache_timestamp: Hashable | None = None,
        strict: bool = False,
    ) -> list[DependencyEdge]:
        """展开 root 的依赖边（默认 root.deps），返回新列表

        strict 为真时，无法解析的依赖会抛出 FormulaUnavailableError（附带声明方）；
        否则作为叶子保留并记录日志。
        """
        return self._expand(
            root, edges, policy or default_policy, [],
            cache_key, cache_timestamp, strict,
        )

    def _expand(
        self,
        dependent: Formula,
        edges: Sequence[DependencyEdge] | None,
        policy: EdgePolicy,
        stack: list[str],
        cache_key: str | None,
        cache_timestamp: Hashable | None,
        strict: bool,
    ) -> list[DependencyEdge]:
        stack.append(dependent.name)
        try:
            if cache_key:
                if cache_timestamp is not None:
                    cache_key = f"{cache_key}-{cache_timestamp}"
                hit = self.cache.get(cache_key, _cache_id(dependent), timestamp=cache_timestamp)
                if hit is not None:
                    return hit

            expanded: list[DependencyEdge] = []
            for dep in dependent.deps if edges is None else edges:
                if dep.name == dependent.name:
                    continue

                action = policy(dependent, dep) or EdgeAction.KEEP
                if action is EdgeAction.PRUNE:
                    continue

                if action is EdgeAction.SKIP:
                    if dep.name in stack:
                        continue
                    target = self._to_formula(dep, dependent, strict)
                    if target is not None:
                        expanded.extend(self._expand(
                            target, None, policy, stack, cache_key, None, strict,
                        ))
                    continue

                if action is EdgeAction.KEEP_BUT_PRUNE_RECURSIVE:
                    expanded.append(dep)
                    continue

                if dep.name in stack:
                    continue
                target = self._to_formula(dep, dependent, strict)
                if target is None:
                    expanded.append(dep)
                    continue
                expanded.extend(self._expand(
                    target, None, policy, stack, cache_key, None, strict,
                ))
                # 改名 / 别名的依赖统一为规范全名
                if dep.name != target.full_name:
                    dep = dep.with_name(target.full_name)
                expanded.append(dep)

            expanded = merge_repeats(expanded)
            if cache_key:
                self.cache.put(cache_key, _cache_id(dependent), expanded, timestamp=cache_timestamp)
            return list(expanded)
        finally:
            stack.pop()

    def _to_formula(self, dep: DependencyEdge, dependent: Formula, strict: bool) -> Formula | None:
        try:
            return self.loader.resolve(dep.name)
        except FormulaUnavailableError as e:
            e.set_dependent(dependent.full_name)
            if strict:
                raise
            logger.warning("无法解析 %s 的依赖 %s，按叶子处理", dependent.full_name, dep.name)
            return None

    # =====================================================================
    # 便捷入口
    # =====================================================================

    def recursive_dependencies(self, formula: Formula, *, strict: bool = False) -> list[DependencyEdge]:
        return self.expand(formula, policy=default_policy, strict=strict)

    def runtime_dependencies(self, formula: Formula, *, strict: bool = False) -> list[DependencyEdge]:
        return self.expand(formula, policy=runtime_policy, strict=strict)
