"""源码构建器与链接检查单元测试"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from cellar.core.exceptions import BuildError
from cellar.core.keg import Keg
from cellar.core.layout import Layout
from cellar.services.builder import SubprocessBuilder, pristine_env, run_commands
from cellar.services.linkage import LinkageCache, SymlinkLinkageAuditor
from cellar.utils.shell import CommandResult


class TestPristineEnv:
    def test_env_contents(self, tmp_path: Path, make_formula) -> None:
        env = pristine_env(make_formula("lib", revision=2), prefix=tmp_path, keg=tmp_path / "k", tmpdir=tmp_path / "t")
        assert env["PREFIX"] == str(tmp_path / "k")
        assert env["CELLAR_VERSION"] == "1.0_2"
        assert env["PATH"].startswith(str(tmp_path / "bin"))
        assert "PYTHONPATH" not in env


class TestRunCommands:
    def test_all_commands_run_in_order(self, tmp_path: Path, make_formula) -> None:
        executor = MagicMock()
        executor.execute.return_value = CommandResult(0, "ok\n", "")
        run_commands(executor, ["a", "b"], formula=make_formula("lib"), env={}, cwd=tmp_path)
        scripts = [c.args[0][-1] for c in executor.execute.call_args_list]
        assert scripts == ["a", "b"]

    def test_failure_stops(self, tmp_path: Path, make_formula) -> None:
        executor = MagicMock()
        executor.execute.return_value = CommandResult(2, "", "no such target")
        with pytest.raises(BuildError) as exc:
            run_commands(executor, ["make", "never"], formula=make_formula("lib"), env={}, cwd=tmp_path)
        assert exc.value.returncode == 2
        assert exc.value.command == "make"
        assert "no such target" in str(exc.value)
        assert executor.execute.call_count == 1

    def test_real_shell_writes_prefix(self, tmp_path: Path, make_formula) -> None:
        f = make_formula("lib", install=['mkdir -p "$PREFIX/bin" && echo hi > "$PREFIX/bin/lib"'])
        keg = tmp_path / "keg"
        env = pristine_env(f, prefix=tmp_path, keg=keg, tmpdir=tmp_path)
        SubprocessBuilder().run_build(f, env, tmp_path)
        assert (keg / "bin" / "lib").read_text(encoding="utf-8") == "hi\n"

    def test_no_install_commands(self, tmp_path: Path, make_formula) -> None:
        with pytest.raises(BuildError, match="没有定义 install"):
            SubprocessBuilder().run_build(make_formula("lib"), {}, tmp_path)


class TestLinkage:
    def test_broken_symlinks_reported(self, layout: Layout) -> None:
        keg_path = layout.cellar / "lib" / "1.0"
        (keg_path / "lib").mkdir(parents=True)
        (keg_path / "lib" / "ok").write_text("x", encoding="utf-8")
        (keg_path / "lib" / "good").symlink_to("ok")
        (keg_path / "lib" / "bad").symlink_to("missing")
        issues = SymlinkLinkageAuditor().audit(Keg(keg_path, layout))
        assert issues == ["lib/bad -> missing"]

    def test_cache_updated_only_when_present(self, layout: Layout) -> None:
        keg = Keg(layout.cellar / "lib" / "1.0", layout)
        cache = LinkageCache(layout.linkage_cache)
        assert not cache.update(keg, [])
        layout.linkage_cache.write_text("{}", encoding="utf-8")
        assert cache.update(keg, ["x"])
        assert cache.get("lib") == {"path": str(keg.path), "issues": ["x"]}
