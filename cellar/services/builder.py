"""源码构建器：SandboxedBuilder 的参考实现

每条 install 命令经 /bin/sh -c 在独立子进程中执行，环境变量完全由调用方给出，
不继承当前进程环境，避免一个包的构建副作用泄漏到另一个包。
这不是沙箱：不做文件系统或网络隔离。
"""

from __future__ import annotations

import logging
from pathlib import Path

from cellar.core.exceptions import BuildError
from cellar.core.formula import Formula
from cellar.utils.shell import CommandExecutor, LocalExecutor, shell_command

logger = logging.getLogger(__name__)

SYSTEM_PATH = "/usr/bin:/bin:/usr/sbin:/sbin"


def pristine_env(formula: Formula, *, prefix: Path, keg: Path, tmpdir: Path) -> dict[str, str]:
    """为一次构建 / post_install 生成纯净环境"""
    return {
        "PATH": f"{prefix / 'bin'}:{prefix / 'sbin'}:{SYSTEM_PATH}",
        "HOME": str(tmpdir),
        "TMPDIR": str(tmpdir),
        "PREFIX": str(keg),
        "CELLAR_PREFIX": str(prefix),
        "CELLAR_NAME": formula.name,
        "CELLAR_VERSION": str(formula.pkg_version),
        "LANG": "C",
    }


def run_commands(
    executor: CommandExecutor, commands: list[str], *,
    formula: Formula, env: dict[str, str], cwd: Path,
    timeout: float | None = None, label: str = "构建",
) -> None:
    """依次执行命令，任一失败抛出 BuildError"""
    for cmd in commands:
        logger.info("[%s] %s: %s", formula.full_name, label, cmd)
        result = executor.execute(shell_command(cmd), cwd=str(cwd), env=env, timeout=timeout)
        if result.stdout:
            logger.debug(result.stdout.rstrip())
        if not result.success:
            raise BuildError(
                formula.full_name,
                f"{label}命令退出码 {result.returncode}: {result.tail()}",
                command=cmd, returncode=result.returncode,
            )


class SubprocessBuilder:
    """逐条执行 formula.install 命令"""

    def __init__(self, executor: CommandExecutor | None = None, *, timeout: float | None = None) -> None:
        self.executor = executor or LocalExecutor()
        self.timeout = timeout

    def run_build(self, formula: Formula, env: dict[str, str], source_dir: Path) -> None:
        if not formula.install:
            raise BuildError(formula.full_name, "没有定义 install 命令")
        run_commands(
            self.executor, formula.install,
            formula=formula, env=env, cwd=source_dir, timeout=self.timeout,
        )
