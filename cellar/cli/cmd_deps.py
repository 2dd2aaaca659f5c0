"""CLI：依赖查询命令"""

from __future__ import annotations

from typing import Any

import click

from cellar.cli import _registry
from cellar.core.config import get_config
from cellar.core.deps.expander import DependencyExpander, EdgeAction, default_policy
from cellar.core.exceptions import CellarError


def register(group: click.Group) -> None:
    group.add_command(deps)
    group.add_command(info)


def _policy(include_build: bool, include_test: bool) -> Any:
    def policy(dependent: Any, dep: Any) -> Any:
        if dep.build and not include_build:
            return EdgeAction.PRUNE
        if dep.test and not include_test:
            return EdgeAction.PRUNE
        return default_policy(dependent, dep)

    return policy


def _echo_tree(expander: Any, formula: Any, policy: Any, indent: int, stack: list[str]) -> None:
    for dep in formula.deps:
        if policy(formula, dep) is EdgeAction.PRUNE:
            continue
        tags = f" [{', '.join(sorted(dep.tags))}]" if dep.tags else ""
        click.echo(f"{'  ' * indent}{dep.name}{tags}")
        if dep.name in stack:
            continue
        try:
            child = expander.loader.resolve(dep.name)
        except CellarError:
            continue
        _echo_tree(expander, child, policy, indent + 1, [*stack, dep.name])


@click.command()
@click.argument("name")
@click.option("--include-build", is_flag=True, help="包含构建期依赖")
@click.option("--include-test", is_flag=True, help="包含测试期依赖")
@click.option("--tree", is_flag=True, help="以树形展示")
def deps(name: str, include_build: bool, include_test: bool, tree: bool) -> None:
    """展开并列出包的全部依赖（依赖在前）"""
    registry = _registry()
    expander = DependencyExpander(registry)
    policy = _policy(include_build, include_test)
    try:
        formula = registry.resolve(name)
        if tree:
            click.echo(formula.full_name)
            _echo_tree(expander, formula, policy, 1, [formula.name])
            return
        expanded = expander.expand(formula, policy=policy, strict=True)
    except CellarError as e:
        click.echo(f"错误: {e}", err=True)
        raise SystemExit(1) from e
    for dep in expanded:
        click.echo(dep.name)


@click.command()
@click.argument("name")
def info(name: str) -> None:
    """显示包定义与本地安装状态"""
    from cellar.core.keg import Cellar
    from cellar.core.layout import Layout
    from cellar.core.platform import Platform

    cfg = get_config()
    try:
        formula = _registry().resolve(name)
    except CellarError as e:
        click.echo(f"错误: {e}", err=True)
        raise SystemExit(1) from e

    platform = Platform.current(os_name=cfg.platform_os, os_version=cfg.platform_version, arch=cfg.arch)
    cellar = Cellar(Layout.from_config(cfg))

    click.echo(f"{formula.full_name}: {formula.pkg_version}")
    if formula.description:
        click.echo(f"  {formula.description}")
    if formula.license:
        from cellar.services.installer.checks import license_to_string
        click.echo(f"  许可证: {license_to_string(formula.license)}")
    bottle = formula.bottle_for(platform.tag)
    click.echo(f"  瓶子 ({platform.tag}): {'有' if bottle else '无'}")
    if formula.keg_only:
        click.echo("  keg-only: 不链接到安装前缀")
    if formula.deprecated:
        click.echo(f"  已弃用: {formula.deprecation_reason or '无说明'}")
    if formula.disabled:
        click.echo(f"  已禁用: {formula.disable_reason or '无说明'}")
    if formula.deps:
        click.echo("  依赖:")
        for dep in formula.deps:
            tags = f" [{', '.join(sorted(dep.tags))}]" if dep.tags else ""
            click.echo(f"    {dep.name}{tags}")

    kegs = cellar.installed_kegs(formula.name)
    if not kegs:
        click.echo("  未安装")
        return
    for keg in kegs:
        count, _ = keg.disk_usage()
        marker = " *" if keg.linked() else ""
        click.echo(f"  {keg.path} ({count} files){marker}")
