"""子进程执行

构建器和 post_install 都经由 CommandExecutor 协议执行命令，测试时可注入 mock。
LocalExecutor 把超时折算成退出码 124（与 coreutils timeout 一致），
调用方只需要看 CommandResult，不必处理 subprocess 的异常。
"""

from __future__ import annotations

import logging
import shlex
import subprocess
from dataclasses import dataclass
from typing import Protocol

logger = logging.getLogger(__name__)

TIMEOUT_RETURNCODE = 124


@dataclass
class CommandResult:
    returncode: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0

    def tail(self, limit: int = 500) -> str:
        """stderr 末尾 limit 个字符，stderr 为空时取 stdout"""
        text = self.stderr or self.stdout
        return text[-limit:].strip()


class CommandExecutor(Protocol):
    """命令执行器协议

    env 为 None 时继承当前进程环境，否则原样使用（不合并）。
    """

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        ...


class LocalExecutor:
    """本地子进程执行器"""

    def execute(
        self,
        cmd: str | list[str],
        *,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        args = shlex.split(cmd) if isinstance(cmd, str) else cmd
        try:
            r = subprocess.run(
                args, capture_output=True, text=True,
                cwd=cwd, env=env, check=False, timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning("命令超时 (%ss): %s", timeout, " ".join(args))
            return CommandResult(
                returncode=TIMEOUT_RETURNCODE,
                stdout=_text(e.stdout),
                stderr=_text(e.stderr) or f"超过 {timeout} 秒未结束",
                timed_out=True,
            )
        return CommandResult(r.returncode, r.stdout, r.stderr)


def _text(data: str | bytes | None) -> str:
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data


def shell_command(script: str) -> list[str]:
    """把一行 shell 脚本包装为 /bin/sh -c 调用，保留变量展开和管道"""
    return ["/bin/sh", "-c", script]
