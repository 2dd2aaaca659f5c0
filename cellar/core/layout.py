"""磁盘布局

<prefix>/
  Cellar/<name>/<pkg_version>/     每个 (包, 版本, 修订) 一个 keg
  opt/<name> -> keg                当前版本的稳定入口
  bin sbin lib include share etc   链接目标
  var/cellar/locks|linked|pinned   锁文件与链接/固定记录
  var/cellar/linkage.json          反向链接缓存
<cache>/
  downloads/                       下载产物（按确定性文件名）
  tmp_cellar/                      瓶子预解压目录
  Backup/                          链接冲突的备份
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from cellar.core.config import Config

KEG_LINK_DIRECTORIES = ("bin", "sbin", "lib", "include", "share", "etc")


@dataclass(frozen=True)
class Layout:
    """安装树路径集合"""

    prefix: Path
    cache: Path

    @classmethod
    def from_config(cls, cfg: Config) -> Layout:
        prefix = Path(cfg.prefix).expanduser()
        cache = Path(cfg.cache_dir).expanduser() if cfg.cache_dir else prefix / "var" / "cache"
        return cls(prefix=prefix, cache=cache)

    @property
    def cellar(self) -> Path:
        return self.prefix / "Cellar"

    @property
    def opt(self) -> Path:
        return self.prefix / "opt"

    @property
    def state_dir(self) -> Path:
        return self.prefix / "var" / "cellar"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / "locks"

    @property
    def linked_dir(self) -> Path:
        return self.state_dir / "linked"

    @property
    def pinned_dir(self) -> Path:
        return self.state_dir / "pinned"

    @property
    def linkage_cache(self) -> Path:
        return self.state_dir / "linkage.json"

    @property
    def downloads(self) -> Path:
        return self.cache / "downloads"

    @property
    def temp_cellar(self) -> Path:
        return self.cache / "tmp_cellar"

    @property
    def backup_dir(self) -> Path:
        return self.cache / "Backup"

    def ensure(self) -> None:
        for d in (self.cellar, self.opt, self.state_dir, self.locks_dir,
                  self.linked_dir, self.pinned_dir, self.downloads):
            d.mkdir(parents=True, exist_ok=True)
