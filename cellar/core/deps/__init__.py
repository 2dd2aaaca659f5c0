"""依赖图模块

- dependency.py: 依赖边（普通依赖 / 平台提供的依赖）
- expander.py: 依赖图展开与重复合并
- cache.py: 展开结果缓存
"""

from cellar.core.deps.cache import ExpansionCache
from cellar.core.deps.dependency import (
    Dependency,
    DependencyEdge,
    PlatformProvidedDependency,
    Tag,
)
from cellar.core.deps.expander import (
    DependencyExpander,
    EdgeAction,
    default_policy,
    merge_repeats,
    runtime_policy,
)

__all__ = [
    "Dependency",
    "DependencyEdge",
    "PlatformProvidedDependency",
    "Tag",
    "DependencyExpander",
    "EdgeAction",
    "ExpansionCache",
    "default_policy",
    "merge_repeats",
    "runtime_policy",
]
