"""cellar 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import click

from cellar import __version__
from cellar.core.config import get_config, init_config
from cellar.utils.logger import setup_logging


def _registry() -> Any:
    """按配置加载 tap 注册表"""
    from cellar.core.registry import FormulaRegistry
    cfg = get_config()
    taps_dir = cfg.taps_dir or str(Path(cfg.prefix).expanduser() / "var" / "taps")
    return FormulaRegistry.from_dir(taps_dir)


def _session(**kwargs: Any) -> Any:
    """创建安装会话的快捷方式"""
    from cellar.services.session import InstallationSession
    return InstallationSession(get_config(), loader=_registry(), **kwargs)


def _print_outcomes(outcomes: list[Any]) -> None:
    if not outcomes:
        click.echo("没有需要处理的包。")
        return
    click.echo("\n=== 结果 ===")
    for o in outcomes:
        detail = f"  ({o.reason})" if o.reason else ""
        click.echo(f"  [{o.status.value:17s}] {o.name}{detail}")


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default="configs/cellar.yml", help="配置文件路径")
def main(config_path: str) -> None:
    """cellar - 包依赖解析与安装工具"""
    setup_logging(
        level=os.getenv("CELLAR_LOG_LEVEL", "INFO"),
        json_output=os.getenv("CELLAR_LOG_JSON", "") == "1",
    )
    init_config(config_path)


# 注册各领域子命令
from cellar.cli.cmd_install import register as _reg_install  # noqa: E402
from cellar.cli.cmd_deps import register as _reg_deps  # noqa: E402

_reg_install(main)
_reg_deps(main)
