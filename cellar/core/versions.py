"""版本比较

优先按 PEP 440 解析（packaging.version），无法解析的版本号
（如 "2024b"、"1.2.3-p1"）退化为按数字/字母分段比较。
"""

from __future__ import annotations

import re
from functools import total_ordering

from packaging.version import InvalidVersion
from packaging.version import Version as _Pep440Version

_SEGMENT_RE = re.compile(r"\d+|[a-zA-Z]+")


def _legacy_key(raw: str) -> tuple:
    parts: list[tuple[int, int | str]] = []
    for seg in _SEGMENT_RE.findall(raw):
        if seg.isdigit():
            parts.append((1, int(seg)))
        else:
            parts.append((0, seg.lower()))
    while parts and parts[-1] == (1, 0):
        parts.pop()
    return tuple(parts)


@total_ordering
class Version:
    """可比较的版本号"""

    __slots__ = ("raw", "_key")

    def __init__(self, raw: str | int | float) -> None:
        self.raw = str(raw).strip()
        try:
            self._key: tuple = (1, _Pep440Version(self.raw))
        except InvalidVersion:
            self._key = (0, _legacy_key(self.raw))

    def _comparable(self, other: Version) -> tuple[tuple, tuple]:
        if self._key[0] == other._key[0]:
            return self._key, other._key
        # 一边合法一边不合法时，统一按分段比较
        return (0, _legacy_key(self.raw)), (0, _legacy_key(other.raw))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        a, b = self._comparable(other)
        return a == b

    def __lt__(self, other: Version) -> bool:
        a, b = self._comparable(other)
        return a < b

    def __hash__(self) -> int:
        return hash(_legacy_key(self.raw))

    def __str__(self) -> str:
        return self.raw

    def __repr__(self) -> str:
        return f"Version({self.raw!r})"


@total_ordering
class PkgVersion:
    """版本 + 修订号，目录名形如 1.2.3 或 1.2.3_1"""

    __slots__ = ("version", "revision")

    def __init__(self, version: Version | str, revision: int = 0) -> None:
        self.version = version if isinstance(version, Version) else Version(version)
        self.revision = int(revision or 0)

    @classmethod
    def parse(cls, text: str) -> PkgVersion:
        version, sep, revision = text.rpartition("_")
        if sep and revision.isdigit():
            return cls(version, int(revision))
        return cls(text, 0)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PkgVersion):
            return NotImplemented
        return (self.version, self.revision) == (other.version, other.revision)

    def __lt__(self, other: PkgVersion) -> bool:
        if self.version != other.version:
            return self.version < other.version
        return self.revision < other.revision

    def __hash__(self) -> int:
        return hash((self.version, self.revision))

    def __str__(self) -> str:
        if self.revision:
            return f"{self.version}_{self.revision}"
        return str(self.version)

    def __repr__(self) -> str:
        return f"PkgVersion({str(self)!r})"
