"""LocalExecutor / shell_command 单元测试"""

from __future__ import annotations

from cellar.utils.shell import TIMEOUT_RETURNCODE, CommandResult, LocalExecutor, shell_command


class TestLocalExecutor:
    def test_success(self, tmp_path) -> None:
        r = LocalExecutor().execute(shell_command("echo hello"), cwd=str(tmp_path))
        assert r.success
        assert "hello" in r.stdout

    def test_failure_returns_code(self, tmp_path) -> None:
        r = LocalExecutor().execute(shell_command("exit 3"), cwd=str(tmp_path))
        assert not r.success
        assert r.returncode == 3

    def test_env_not_inherited(self, tmp_path, monkeypatch) -> None:
        monkeypatch.setenv("LEAKY_VAR", "1")
        r = LocalExecutor().execute(
            shell_command('echo "[$LEAKY_VAR][$MY_VAR]"'),
            cwd=str(tmp_path), env={"PATH": "/usr/bin:/bin", "MY_VAR": "42"},
        )
        assert "[][42]" in r.stdout

    def test_string_command_is_split(self, tmp_path) -> None:
        r = LocalExecutor().execute("echo a b", cwd=str(tmp_path))
        assert r.stdout.strip() == "a b"


class TestCommandResult:
    def test_success_property(self) -> None:
        assert CommandResult(0, "", "").success
        assert not CommandResult(1, "", "err").success

    def test_tail_prefers_stderr(self) -> None:
        assert CommandResult(1, "out", "x" * 600 + "end\n").tail(10) == "xxxxxxxend"
        assert CommandResult(1, "only stdout\n", "").tail() == "only stdout"


class TestTimeout:
    def test_timeout_becomes_result(self, tmp_path) -> None:
        r = LocalExecutor().execute(shell_command("exec sleep 5"), cwd=str(tmp_path), timeout=0.2)
        assert r.timed_out
        assert r.returncode == TIMEOUT_RETURNCODE
        assert not r.success
        assert r.stderr
