"""CLI：安装与获取命令"""

from __future__ import annotations

import json

import click

from cellar.cli import _print_outcomes, _session
from cellar.core.config import get_config
from cellar.core.exceptions import CellarError


def register(group: click.Group) -> None:
    group.add_command(install)
    group.add_command(fetch)


@click.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--force", "-f", is_flag=True, help="忽略冲突与禁用状态")
@click.option("--force-bottle", is_flag=True, help="即使有构建选项也使用瓶子")
@click.option("--build-from-source", "-s", is_flag=True, help="请求的包从源码构建")
@click.option("--ignore-dependencies", is_flag=True, help="不安装依赖（危险）")
@click.option("--only-dependencies", is_flag=True, help="只安装依赖")
@click.option("--include-test", is_flag=True, help="同时安装请求的包的测试依赖")
@click.option("--skip-post-install", is_flag=True, help="跳过 post_install")
@click.option("--skip-link", is_flag=True, help="不链接到安装前缀")
@click.option("--overwrite", is_flag=True, help="链接时覆盖已存在的文件")
@click.option("--reinstall", is_flag=True, help="已安装也重新安装")
@click.option("--jobs", "-j", default=None, type=int, help="并发下载数")
@click.option("--json", "as_json", is_flag=True, help="以 JSON 输出结果")
def install(
    names: tuple[str, ...], force: bool, force_bottle: bool, build_from_source: bool,
    ignore_dependencies: bool, only_dependencies: bool, include_test: bool,
    skip_post_install: bool, skip_link: bool, overwrite: bool, reinstall: bool,
    jobs: int | None, as_json: bool,
) -> None:
    """安装包及其依赖"""
    from cellar.services.installer.models import InstallOptions

    cfg = get_config()
    if jobs:
        cfg.fetch_concurrency = jobs
    options = InstallOptions.from_config(cfg)
    options.force = options.force or force
    options.force_bottle = options.force_bottle or force_bottle
    options.ignore_dependencies = options.ignore_dependencies or ignore_dependencies
    options.only_deps = options.only_deps or only_dependencies
    options.skip_post_install = options.skip_post_install or skip_post_install
    options.skip_link = options.skip_link or skip_link
    options.overwrite = options.overwrite or overwrite
    if build_from_source:
        options.build_from_source += list(names)
    if include_test:
        options.include_test_formulae += list(names)

    try:
        with _session(options=options) as session:
            outcomes = session.install(names, reinstall=reinstall)
    except CellarError as e:
        click.echo(f"错误: {e}", err=True)
        raise SystemExit(1) from e

    if as_json:
        click.echo(json.dumps([o.to_dict() for o in outcomes], ensure_ascii=False, indent=2))
    else:
        _print_outcomes(outcomes)
    if any(not o.ok for o in outcomes):
        raise SystemExit(1)


@click.command()
@click.argument("names", nargs=-1, required=True)
@click.option("--force", "-f", is_flag=True, help="删除缓存后重新下载")
@click.option("--retry", default=None, type=int, help="下载失败重试次数")
@click.option("--jobs", "-j", default=None, type=int, help="并发下载数")
@click.option("--build-from-source", "-s", is_flag=True, help="获取源码而非瓶子")
def fetch(
    names: tuple[str, ...], force: bool, retry: int | None,
    jobs: int | None, build_from_source: bool,
) -> None:
    """只下载包及其依赖的产物，不安装"""
    from cellar.services.installer.models import InstallOptions

    cfg = get_config()
    if retry is not None:
        cfg.fetch_retries = retry
    if jobs:
        cfg.fetch_concurrency = jobs
    options = InstallOptions.from_config(cfg)
    if build_from_source:
        options.build_from_source += list(names)

    with _session(options=options, force_fetch=force) as session:
        outcomes = session.fetch(names)

    _print_outcomes(outcomes)
    if any(not o.ok for o in outcomes):
        raise SystemExit(1)
