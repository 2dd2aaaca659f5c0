"""端到端安装流程测试：真实 tar 归档（file:// URL）、/bin/sh 构建、真实链接"""

from __future__ import annotations

import json
import os
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cellar.core.deps.dependency import PlatformProvidedDependency
from cellar.core.exceptions import ForbiddenFormulaError, FormulaConflictError
from cellar.core.formula import BottleSpec
from cellar.core.receipt import RECEIPT_FILENAME
from cellar.services.installer import InstallOptions, OutcomeStatus

TAG = "x86_64_linux"


def _install_script(name: str) -> list[str]:
    return [f'mkdir -p "$PREFIX/bin" && cp payload "$PREFIX/bin/{name}"']


@pytest.fixture()
def source_formula(tmp_path, loader, make_formula, tarball):
    """源码构建的包：归档内 <name>-<version>/payload，install 把它复制到 $PREFIX/bin/<name>"""

    def factory(name: str, deps=None, *, version: str = "1.0", install=None, **kwargs):
        archive = tmp_path / "srv" / f"{name}-{version}.tar.gz"
        digest = tarball(archive, {f"{name}-{version}/payload": f"{name} {version}\n"})
        return loader.add(make_formula(
            name, deps, version=version, url=archive.as_uri(), sha256=digest,
            install=install if install is not None else _install_script(name), **kwargs,
        ))

    return factory


@pytest.fixture()
def bottled_formula(tmp_path, loader, make_formula, tarball):
    """带瓶子的包：瓶子根目录为 <name>/<version>/bin/<name>"""

    def factory(name: str, deps=None, *, version: str = "1.0", **kwargs):
        archive = tmp_path / "srv" / f"{name}-{version}.bottle.tar.gz"
        digest = tarball(
            archive, {f"{name}/{version}/bin/{name}": "#!/bin/sh\n"},
            modes={f"{name}/{version}/bin/{name}": 0o755},
        )
        spec = BottleSpec(tag=TAG, url=archive.as_uri(), sha256=digest, **kwargs.pop("bottle", {}))
        return loader.add(make_formula(name, deps, version=version, bottles={TAG: spec}, **kwargs))

    return factory


def _statuses(outcomes) -> list[tuple[str, OutcomeStatus]]:
    return [(o.name, o.status) for o in outcomes]


def _receipt(layout, name: str, version: str = "1.0") -> dict:
    return json.loads((layout.cellar / name / version / RECEIPT_FILENAME).read_text(encoding="utf-8"))


# =========================================================================
# 源码构建
# =========================================================================


class TestSourceInstall:
    def test_dependency_installed_first(self, make_session, source_formula, layout) -> None:
        source_formula("lib")
        source_formula("app", ["lib"])

        outcomes = make_session().install(["app"])

        assert _statuses(outcomes) == [("lib", OutcomeStatus.INSTALLED), ("app", OutcomeStatus.INSTALLED)]
        for name in ("lib", "app"):
            linked = layout.prefix / "bin" / name
            assert linked.is_symlink()
            assert linked.read_text(encoding="utf-8") == f"{name} 1.0\n"
            assert (layout.opt / name).resolve() == (layout.cellar / name / "1.0").resolve()

        app = _receipt(layout, "app")
        assert app["installed_on_request"] is True
        assert [d["full_name"] for d in app["runtime_dependencies"]] == ["lib"]
        assert app["runtime_dependencies"][0]["declared_directly"] is True
        lib = _receipt(layout, "lib")
        assert lib["installed_as_dependency"] is True
        assert lib["installed_on_request"] is False

    def test_roots_in_topological_order(self, make_session, source_formula) -> None:
        source_formula("c")
        source_formula("b", ["c"])
        source_formula("a", ["b"])

        outcomes = make_session().install(["a", "b", "c"])

        assert [o.name for o in outcomes] == ["c", "b", "a"]
        assert all(o.status is OutcomeStatus.INSTALLED for o in outcomes)

    def test_parallel_downloads(self, make_session, source_formula, config) -> None:
        for name in ("x", "y", "z"):
            source_formula(name)
        source_formula("top", ["x", "y", "z"])
        config.fetch_concurrency = 3

        outcomes = make_session().install(["top"])

        assert [o.name for o in outcomes] == ["x", "y", "z", "top"]

    def test_build_failure_rolls_back(self, make_session, source_formula, layout) -> None:
        source_formula("lib", install=['mkdir -p "$PREFIX/bin" && exit 3'])
        source_formula("app", ["lib"])
        session = make_session()

        outcomes = session.install(["app"])

        assert _statuses(outcomes) == [("app", OutcomeStatus.FAILED)]
        assert "lib 构建失败" in outcomes[0].reason
        assert "依赖链: app" in outcomes[0].reason
        assert not (layout.cellar / "lib").exists()
        assert not (layout.cellar / "app").exists()
        assert session.locks.held() == []

    def test_empty_installation_fails(self, make_session, source_formula, layout) -> None:
        source_formula("noop", install=["true"])

        outcomes = make_session().install(["noop"])

        assert outcomes[0].status is OutcomeStatus.FAILED
        assert "没有任何文件" in outcomes[0].reason
        assert not (layout.cellar / "noop").exists()

    def test_already_satisfied(self, make_session, source_formula) -> None:
        source_formula("lib")
        make_session().install(["lib"])

        outcomes = make_session().install(["lib"])

        assert _statuses(outcomes) == [("lib", OutcomeStatus.ALREADY_SATISFIED)]

    def test_only_dependencies(self, make_session, source_formula, layout) -> None:
        source_formula("lib")
        source_formula("app", ["lib"])

        outcomes = make_session(options=InstallOptions(only_deps=True)).install(["app"])

        assert _statuses(outcomes) == [("lib", OutcomeStatus.INSTALLED)]
        assert not (layout.cellar / "app").exists()

    def test_post_install_failure_is_warning(self, make_session, source_formula) -> None:
        source_formula("lib", post_install=["exit 5"])
        session = make_session()

        outcomes = session.install(["lib"])

        assert outcomes[0].status is OutcomeStatus.INSTALLED
        assert "post_install" in session.reports["lib"].warnings[0]

    def test_keg_only_not_linked(self, make_session, source_formula, layout) -> None:
        source_formula("lib", keg_only=True)

        make_session().install(["lib"])

        assert not (layout.prefix / "bin" / "lib").exists()
        assert (layout.opt / "lib").is_symlink()


# =========================================================================
# 瓶子
# =========================================================================


class TestBottleInstall:
    def test_pour(self, make_session, bottled_formula, layout) -> None:
        bottled_formula("lib")
        session = make_session()

        outcomes = session.install(["lib"])

        assert _statuses(outcomes) == [("lib", OutcomeStatus.INSTALLED)]
        assert session.reports["lib"].poured
        tool = layout.prefix / "bin" / "lib"
        assert tool.is_symlink() and os.access(tool, os.X_OK)
        assert _receipt(layout, "lib")["poured_from_bottle"] is True
        assert not (layout.temp_cellar / "lib").exists()

    def test_build_dependency_not_needed_when_pouring(self, make_session, bottled_formula, source_formula, layout) -> None:
        source_formula("cmake")
        bottled_formula("lib", [("cmake", "build")])

        outcomes = make_session().install(["lib"])

        assert [o.name for o in outcomes] == ["lib"]
        assert not (layout.cellar / "cmake").exists()

    def test_corrupt_bottle_fails_cleanly(self, make_session, bottled_formula, layout) -> None:
        f = bottled_formula("lib")
        f.bottles[TAG] = BottleSpec(tag=TAG, url=f.bottles[TAG].url, sha256="0" * 64)

        outcomes = make_session().install(["lib"])

        assert outcomes[0].status is OutcomeStatus.FAILED
        assert "校验和不匹配" in outcomes[0].reason
        assert not (layout.cellar / "lib").exists()
        assert not list(layout.downloads.iterdir())


# =========================================================================
# 链接冲突
# =========================================================================


class TestLinkConflicts:
    def test_link_overwrite_backs_up(self, make_session, source_formula, layout) -> None:
        stray = layout.prefix / "bin" / "tool"
        stray.parent.mkdir(parents=True, exist_ok=True)
        stray.write_text("stray", encoding="utf-8")
        source_formula("tool", link_overwrite=["bin/tool"])
        session = make_session()

        outcomes = session.install(["tool"])

        assert outcomes[0].reason == ""
        assert stray.is_symlink()
        backup = layout.backup_dir / "bin" / "tool"
        assert backup.read_text(encoding="utf-8") == "stray"
        assert session.reports["tool"].backups == {str(stray): str(backup)}

    def test_conflict_degrades(self, make_session, source_formula, layout) -> None:
        stray = layout.prefix / "bin" / "tool"
        stray.parent.mkdir(parents=True, exist_ok=True)
        stray.write_text("stray", encoding="utf-8")
        source_formula("tool")
        session = make_session()

        outcomes = session.install(["tool"])

        assert outcomes[0].status is OutcomeStatus.INSTALLED
        assert outcomes[0].reason == "已安装但未完成链接"
        assert session.reports["tool"].degraded
        assert not stray.is_symlink()
        assert (layout.cellar / "tool" / "1.0" / RECEIPT_FILENAME).is_file()


# =========================================================================
# 重装
# =========================================================================


class TestReinstall:
    def test_reinstall_replaces_keg(self, make_session, source_formula, layout) -> None:
        source_formula("lib")
        make_session().install(["lib"])

        outcomes = make_session().install(["lib"], reinstall=True)

        assert _statuses(outcomes) == [("lib", OutcomeStatus.INSTALLED)]
        assert not (layout.cellar / "lib" / "1.0.tmp").exists()
        assert (layout.prefix / "bin" / "lib").is_symlink()

    def test_failed_reinstall_restores(self, make_session, source_formula, loader, layout) -> None:
        source_formula("lib")
        make_session().install(["lib"])
        loader.formulae["lib"].install = ["exit 1"]

        outcomes = make_session().install(["lib"], reinstall=True)

        assert outcomes[0].status is OutcomeStatus.FAILED
        assert (layout.cellar / "lib" / "1.0" / "bin" / "lib").is_file()
        assert not (layout.cellar / "lib" / "1.0.tmp").exists()
        assert (layout.prefix / "bin" / "lib").is_symlink()

    def test_upgrade_dependency(self, make_session, source_formula, layout) -> None:
        source_formula("lib")
        make_session().install(["lib"])
        source_formula("lib", version="2.0")
        source_formula("app", ["lib"])

        outcomes = make_session().install(["app"])

        assert [o.name for o in outcomes] == ["lib", "app"]
        assert (layout.prefix / "bin" / "lib").read_text(encoding="utf-8") == "lib 2.0\n"


# =========================================================================
# 策略与获取
# =========================================================================


class TestPolicyAndFetch:
    def test_forbidden_root_aborts_batch(self, make_session, source_formula, config, layout) -> None:
        source_formula("lib")
        source_formula("app")
        config.forbidden_formulae = ["app"]
        session = make_session()

        with pytest.raises(ForbiddenFormulaError):
            session.install(["lib", "app"])

        assert not (layout.cellar / "lib").exists()
        assert session.locks.held() == []

    def test_unknown_name_recorded(self, make_session, source_formula) -> None:
        source_formula("lib")

        outcomes = make_session().install(["ghost", "lib"])

        assert _statuses(outcomes) == [("ghost", OutcomeStatus.FAILED), ("lib", OutcomeStatus.INSTALLED)]

    def test_fetch_only(self, make_session, source_formula, layout) -> None:
        source_formula("lib")
        source_formula("app", ["lib"])

        outcomes = make_session().fetch(["app"])

        assert _statuses(outcomes) == [("app", OutcomeStatus.FETCHED)]
        names = sorted(p.name for p in layout.downloads.iterdir())
        assert names == ["app--1.0.tar.gz", "lib--1.0.tar.gz"]
        assert not (layout.cellar / "app").exists()

    def test_fetch_failure_reported(self, make_session, loader, make_formula, tmp_path) -> None:
        loader.add(make_formula("lib", url=(tmp_path / "missing.tar.gz").as_uri()))
        loader.add(make_formula("app", ["lib"], url=(tmp_path / "missing-app.tar.gz").as_uri()))

        outcomes = make_session().fetch(["app"])

        assert _statuses(outcomes) == [("lib", OutcomeStatus.FAILED), ("app", OutcomeStatus.FAILED)]

    def test_linked_conflict_aborts_before_install(self, make_session, source_formula, layout) -> None:
        source_formula("other")
        make_session().install(["other"])
        source_formula("a")
        source_formula("b", conflicts=["other"])
        session = make_session()

        with pytest.raises(FormulaConflictError, match="other"):
            session.install(["a", "b"])

        assert not (layout.cellar / "a").exists()
        assert not (layout.cellar / "b").exists()
        assert session.locks.held() == []


# =========================================================================
# 依赖边界情况
# =========================================================================


class TestDependencyEdgeCases:
    def test_platform_provided_dependency_without_definition(self, make_session, source_formula, layout) -> None:
        source_formula("app", [PlatformProvidedDependency("zlib", platform="linux", since="5.0")])

        outcomes = make_session().install(["app"])

        assert _statuses(outcomes) == [("app", OutcomeStatus.INSTALLED)]
        assert not (layout.cellar / "zlib").exists()
        assert _receipt(layout, "app")["runtime_dependencies"] == []

    def test_platform_dependency_too_old_still_resolved(self, make_session, source_formula) -> None:
        source_formula("app", [PlatformProvidedDependency("zlib", platform="linux", since="7.0")])

        outcomes = make_session().install(["app"])

        assert outcomes[0].status is OutcomeStatus.FAILED
        assert "zlib" in outcomes[0].reason

    def test_corrupt_dependency_receipt_tolerated(self, make_session, source_formula, layout) -> None:
        source_formula("lib")
        make_session().install(["lib"])
        (layout.cellar / "lib" / "1.0" / RECEIPT_FILENAME).write_text("{broken", encoding="utf-8")
        source_formula("app", ["lib"])

        outcomes = make_session().install(["app"])

        assert _statuses(outcomes) == [("app", OutcomeStatus.INSTALLED)]

    def test_second_attempt_in_session_skipped(self, make_session, source_formula, layout) -> None:
        source_formula("lib", install=["exit 1"])
        session = make_session()

        first = session.install(["lib"])
        second = session.install(["lib"])

        assert _statuses(first) == [("lib", OutcomeStatus.FAILED)]
        assert second == []


# =========================================================================
# 链接检查
# =========================================================================


class TestLinkageAudit:
    def test_auditor_error_is_warning(self, make_session, source_formula, layout) -> None:
        source_formula("lib")
        auditor = MagicMock()
        auditor.audit.side_effect = RuntimeError("boom")
        session = make_session(auditor=auditor)

        outcomes = session.install(["lib"])

        assert _statuses(outcomes) == [("lib", OutcomeStatus.INSTALLED)]
        assert any("链接检查失败" in w for w in session.reports["lib"].warnings)
        assert (layout.cellar / "lib" / "1.0" / RECEIPT_FILENAME).is_file()
        assert (layout.prefix / "bin" / "lib").is_symlink()
