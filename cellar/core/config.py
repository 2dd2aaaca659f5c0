"""集中配置管理

替代各模块散落的默认常量，提供统一的配置入口。
支持从 YAML 文件加载 + CELLAR_* 环境变量覆盖 + 编程式覆盖。
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields

from cellar.core.exceptions import ConfigError
from cellar.utils.fileio import load_yaml

logger = logging.getLogger(__name__)

ENV_PREFIX = "CELLAR_"


@dataclass
class Config:
    """安装引擎全局配置"""

    # 目录
    prefix: str = "/opt/cellar"
    cache_dir: str = ""          # 为空时使用 <prefix>/var/cache
    taps_dir: str = ""           # 为空时使用 <prefix>/var/taps

    # 下载
    fetch_concurrency: int = 1
    fetch_retries: int = 2
    fetch_timeout: float | None = None

    # 安装行为
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

    # 策略
    forbidden_licenses: list[str] = field(default_factory=list)
    forbidden_taps: list[str] = field(default_factory=list)
    allowed_taps: list[str] = field(default_factory=list)
    forbidden_formulae: list[str] = field(default_factory=list)
    forbidden_owner: str = "管理员"

    # 平台（为空时自动探测）
    platform_os: str = ""
    platform_version: str = ""
    arch: str = ""

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.fetch_concurrency < 1:
            raise ConfigError(f"fetch_concurrency 必须 >= 1: {self.fetch_concurrency}")
        if self.fetch_retries < 0:
            raise ConfigError(f"fetch_retries 不能为负数: {self.fetch_retries}")

    @classmethod
    def from_file(cls, path: str = "configs/cellar.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        data = load_yaml(path)
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        matched = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        try:
            cfg = cls(**matched)
        except TypeError as e:
            raise ConfigError(f"配置文件 {path} 无效: {e}") from e
        cfg.extra = extra
        return cfg

    def apply_env(self, environ: dict[str, str] | None = None) -> Config:
        """用 CELLAR_* 环境变量覆盖字段，列表字段以空白分隔"""
        env = os.environ if environ is None else environ
        for f in fields(self):
            if f.name == "extra":
                continue
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            setattr(self, f.name, _coerce(f.name, getattr(self, f.name), raw))
        self.__post_init__()
        return self

    def to_dict(self) -> dict:
        return asdict(self)


def _coerce(name: str, current: object, raw: str) -> object:
    if isinstance(current, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(current, list):
        return raw.split()
    if isinstance(current, int):
        try:
            return int(raw)
        except ValueError as e:
            raise ConfigError(f"环境变量 {ENV_PREFIX}{name.upper()} 不是整数: {raw}") from e
    if name == "fetch_timeout":
        return float(raw) if raw.strip() else None
    return raw


# 全局单例，首次 import 时不加载文件；由 CLI 入口显式初始化
_current: Config | None = None


def get_config() -> Config:
    """获取当前配置（未初始化则返回默认值）"""
    global _current  # noqa: PLW0603
    if _current is None:
        _current = Config()
    return _current


def init_config(path: str = "configs/cellar.yml", *, use_env: bool = True) -> Config:
    """从文件初始化全局配置"""
    global _current  # noqa: PLW0603
    cfg = Config.from_file(path)
    if use_env:
        cfg.apply_env()
    _current = cfg
    logger.info("配置已加载: %s", path)
    return _current
