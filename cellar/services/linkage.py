"""安装后链接检查与反向链接缓存

SymlinkLinkageAuditor 只报告 keg 内失效的符号链接，结果仅供参考。
LinkageCache 记录每个 keg 的检查结果，文件存在时才更新（与完整的链接审计缓存保持同一形态）。
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from cellar.core.keg import Keg
from cellar.utils.fileio import load_json, save_json

logger = logging.getLogger(__name__)


class SymlinkLinkageAuditor:
    """检查 keg 内指向不存在目标的符号链接"""

    def audit(self, keg: Keg) -> list[str]:
        broken: list[str] = []
        for path in sorted(keg.path.rglob("*")):
            if path.is_symlink() and not path.exists():
                broken.append(f"{path.relative_to(keg.path)} -> {os.readlink(path)}")
        return broken


class LinkageCache:
    """<prefix>/var/cellar/linkage.json: {keg 名: {"path": ..., "issues": [...]}}"""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def update(self, keg: Keg, issues: list[str]) -> bool:
        """缓存文件存在时写入该 keg 的结果，返回是否更新"""
        if not self.exists():
            return False
        data = load_json(self.path) or {}
        data[keg.name] = {"path": str(keg.path), "issues": issues}
        save_json(self.path, data)
        return True

    def get(self, name: str) -> dict | None:
        if not self.exists():
            return None
        return (load_json(self.path) or {}).get(name)
