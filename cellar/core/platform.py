"""运行平台信息

瓶子按平台标签分发（如 x86_64_linux、arm64_macos），
平台提供的依赖按操作系统版本判断是否需要安装。
"""

from __future__ import annotations

import platform as _platform
from dataclasses import dataclass

from cellar.core.versions import Version

_ARCH_ALIASES = {"amd64": "x86_64", "aarch64": "arm64"}


@dataclass(frozen=True)
class Platform:
    """当前（或模拟的）运行平台"""

    os: str
    os_version: str
    arch: str

    @property
    def tag(self) -> str:
        return f"{self.arch}_{self.os}"

    def version_at_least(self, minimum: str) -> bool:
        return Version(self.os_version) >= Version(minimum)

    @classmethod
    def current(cls, *, os_name: str = "", os_version: str = "", arch: str = "") -> Platform:
        """探测当前平台，显式参数优先（用于配置覆盖或测试模拟）"""
        system = _platform.system().lower()
        detected_os = "macos" if system == "darwin" else system
        if system == "darwin":
            detected_version = _platform.mac_ver()[0]
        else:
            detected_version = _platform.release().split("-")[0]
        machine = _platform.machine().lower()
        return cls(
            os=os_name or detected_os,
            os_version=os_version or detected_version or "0",
            arch=arch or _ARCH_ALIASES.get(machine, machine),
        )
