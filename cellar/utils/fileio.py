"""YAML / JSON 文件读写

- 配置与 tap 清单是 YAML，格式错误统一抛 ConfigError（带文件路径）
- 安装回执与链接缓存是 JSON，内容损坏抛 ValidationError
- 所有写入都经 atomic_write: 同目录临时文件 + os.replace；
  durable=True 时 replace 前后各 fsync 一次（回执需要落盘）
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from cellar.core.exceptions import ConfigError, ValidationError

logger = logging.getLogger(__name__)

# tap 清单可能很大，但超过 10MB 基本是放错了文件
MAX_YAML_SIZE = 10 * 1024 * 1024


def atomic_write(path: Path, content: str, *, durable: bool = False) -> None:
    """原子写入文本文件，失败时删除临时文件，目标文件保持原样"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            if durable:
                f.flush()
                os.fsync(f.fileno())
        os.replace(tmp, str(path))
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise
    if durable:
        _fsync_dir(path.parent)


def _fsync_dir(directory: Path) -> None:
    fd = os.open(str(directory), os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def load_yaml(path: str | Path) -> dict[str, Any]:
    """读取 YAML 映射；文件不存在或为空返回 {}

    异常:
        ConfigError: 文件过大、YAML 语法错误、顶层不是映射
    """
    p = Path(path)
    if not p.is_file():
        return {}
    size = p.stat().st_size
    if size > MAX_YAML_SIZE:
        raise ConfigError(f"YAML 文件过大: {p} ({size} 字节，上限 {MAX_YAML_SIZE})")
    try:
        with open(p, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"解析 YAML 失败: {p}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{p} 顶层必须是映射，实际是 {type(data).__name__}")
    return data


def load_json(path: str | Path) -> dict[str, Any] | None:
    """读取 JSON 对象；文件不存在或为空返回 None，内容损坏抛 ValidationError"""
    p = Path(path)
    if not p.is_file():
        return None
    content = p.read_text(encoding="utf-8")
    if not content.strip():
        return None
    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise ValidationError(f"无法解析 {p}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{p} 内容不是 JSON 对象")
    return data


def save_json(path: str | Path, data: Any, *, durable: bool = False) -> None:
    atomic_write(Path(path), json.dumps(data, indent=2, ensure_ascii=False) + "\n", durable=durable)
