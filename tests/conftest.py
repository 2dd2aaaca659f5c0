"""共享测试夹具: 内存包加载器、测试用配置与平台、tar 归档构造"""

from __future__ import annotations

import hashlib
import io
import tarfile
from pathlib import Path
from typing import Any, Callable

import pytest
from rich.console import Console

from cellar.core.config import Config
from cellar.core.deps.dependency import Dependency
from cellar.core.exceptions import FormulaUnavailableError
from cellar.core.formula import Formula
from cellar.core.layout import Layout
from cellar.core.platform import Platform
from cellar.utils.logger import reset_logging


class DictLoader:
    """按名称返回 Formula 的内存加载器，每次 resolve 复制一份"""

    def __init__(self, formulae: list[Formula] | None = None) -> None:
        self.formulae: dict[str, Formula] = {}
        self.calls: list[str] = []
        for f in formulae or []:
            self.add(f)

    def add(self, formula: Formula) -> Formula:
        self.formulae[formula.full_name] = formula
        return formula

    def resolve(self, name: str) -> Formula:
        self.calls.append(name)
        base = self.formulae.get(name)
        if base is None:
            raise FormulaUnavailableError(name)
        return Formula(**{
            k: v for k, v in vars(base).items()
            if k not in ("build", "local_bottle_path", "force_bottle")
        })

    def rename_of(self, name: str) -> str | None:
        return None

    def tap_migration_of(self, name: str) -> str | None:
        return None


def _dep(spec: Any) -> Any:
    if isinstance(spec, str):
        return Dependency(spec)
    if isinstance(spec, tuple):
        name, *tags = spec
        return Dependency(name, frozenset(tags))
    return spec


@pytest.fixture()
def make_formula() -> Callable[..., Formula]:
    """make_formula("app", deps=["lib", ("cmake", "build")], version="1.0", ...)"""

    def factory(name: str, deps: list[Any] | None = None, **kwargs: Any) -> Formula:
        kwargs.setdefault("version", "1.0")
        return Formula(name=name, deps=[_dep(d) for d in deps or []], **kwargs)

    return factory


@pytest.fixture()
def loader() -> DictLoader:
    return DictLoader()


@pytest.fixture()
def platform() -> Platform:
    return Platform(os="linux", os_version="6.1", arch="x86_64")


@pytest.fixture()
def config(tmp_path: Path) -> Config:
    return Config(
        prefix=str(tmp_path / "prefix"),
        cache_dir=str(tmp_path / "cache"),
        fetch_retries=0,
        platform_os="linux",
        platform_version="6.1",
        arch="x86_64",
    )


@pytest.fixture()
def layout(config: Config) -> Layout:
    lay = Layout.from_config(config)
    lay.ensure()
    return lay


@pytest.fixture()
def make_session(config: Config, loader: DictLoader, layout: Layout, platform: Platform):
    """make_session(options=..., builder=..., **overrides) -> InstallationSession，测试结束自动关闭"""
    from cellar.services.session import InstallationSession

    sessions = []

    def factory(**kwargs: Any) -> Any:
        kwargs.setdefault("loader", loader)
        kwargs.setdefault("layout", layout)
        kwargs.setdefault("platform", platform)
        kwargs.setdefault("console", Console(file=io.StringIO()))
        kwargs.setdefault("sleep", lambda s: None)
        session = InstallationSession(kwargs.pop("config", config), **kwargs)
        sessions.append(session)
        return session

    yield factory
    for session in sessions:
        session.close()


def build_tarball(path: Path, files: dict[str, str], *, modes: dict[str, int] | None = None) -> str:
    """把 {归档内路径: 内容} 写成 tar.gz，返回 sha256"""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, content in files.items():
            data = content.encode("utf-8")
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = (modes or {}).get(name, 0o644)
            tar.addfile(info, io.BytesIO(data))
    return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture()
def tarball() -> Callable[..., str]:
    return build_tarball


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    reset_logging()
