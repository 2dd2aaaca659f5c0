"""统一异常体系

所有业务异常继承 CellarError，按解析 / 策略 / 下载 / 构建 / 链接分类。
会话层据此决定：策略错误中止整批，其余错误记为单包失败后继续。
"""

from __future__ import annotations

from pathlib import Path


class CellarError(Exception):
    """框架基础异常

    dependents 记录依赖链（由近及远），嵌套安装失败时逐层追加，
    便于同时报告直接依赖方和最初请求的根包。
    """

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.dependents: list[str] = []

    def add_dependent(self, name: str) -> None:
        if name not in self.dependents:
            self.dependents.append(name)

    @property
    def chain(self) -> str:
        """依赖链描述，如 "lib <- mid <- app" """
        return " <- ".join(self.dependents)

    def __str__(self) -> str:
        message = super().__str__()
        if self.dependents:
            return f"{message} (依赖链: {self.chain})"
        return message


class ConfigError(CellarError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(CellarError, ValueError):
    """输入数据校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class InvalidStateError(CellarError):
    """安装状态机出现非法迁移"""

    code = "INVALID_STATE"


class OperationInProgressError(CellarError):
    """另一个进程正持有该包的锁"""

    code = "OPERATION_IN_PROGRESS"


class ReceiptError(CellarError):
    """安装回执读写失败或已写入后被修改"""

    code = "RECEIPT_ERROR"


# =========================================================================
# 解析错误
# =========================================================================

class ResolutionError(CellarError):
    """包名解析失败"""

    code = "RESOLUTION_ERROR"


class FormulaUnavailableError(ResolutionError):
    """指定的包不存在"""

    code = "FORMULA_UNAVAILABLE"

    def __init__(self, name: str, dependent: str | None = None) -> None:
        super().__init__(f"没有可用的包: {name}")
        self.name = name
        self.dependent = dependent
        if dependent:
            self.add_dependent(dependent)

    def set_dependent(self, dependent: str) -> None:
        if self.dependent is None:
            self.dependent = dependent
        self.add_dependent(dependent)


class AmbiguousFormulaError(ResolutionError):
    """同名包存在于多个 tap 中"""

    code = "AMBIGUOUS_FORMULA"

    def __init__(self, name: str, taps: list[str]) -> None:
        candidates = ", ".join(f"{tap}/{name}" for tap in taps)
        super().__init__(f"包名 {name} 存在歧义，请使用完整名称之一: {candidates}")
        self.name = name
        self.taps = taps


class CyclicDependencyError(ResolutionError):
    """包直接或间接依赖自身"""

    code = "CYCLIC_DEPENDENCY"


# =========================================================================
# 策略错误（总是在 prelude 阶段抛出，不会发生在文件系统变更之后）
# =========================================================================

class PolicyError(CellarError):
    """安装被策略阻止"""

    code = "POLICY_ERROR"


class CannotInstallFormulaError(PolicyError):
    """该包当前无法安装"""

    code = "CANNOT_INSTALL"


class ForbiddenLicenseError(CannotInstallFormulaError):
    code = "FORBIDDEN_LICENSE"


class ForbiddenTapError(CannotInstallFormulaError):
    code = "FORBIDDEN_TAP"


class ForbiddenFormulaError(CannotInstallFormulaError):
    code = "FORBIDDEN_FORMULA"


class PinnedDependencyError(CannotInstallFormulaError):
    code = "PINNED_DEPENDENCY"


class ArchitectureMismatchError(CannotInstallFormulaError):
    code = "ARCH_MISMATCH"


class FormulaConflictError(CannotInstallFormulaError):
    """与已安装并链接的包冲突"""

    code = "FORMULA_CONFLICT"

    def __init__(self, name: str, conflicts: list[str]) -> None:
        super().__init__(
            f"无法安装 {name}，以下已安装的包与之冲突: {', '.join(conflicts)}。"
            f"请先卸载或 unlink 后重试"
        )
        self.conflicts = conflicts


# =========================================================================
# 下载错误（可重试）
# =========================================================================

class DownloadError(CellarError):
    """下载失败"""

    code = "DOWNLOAD_ERROR"


class ChecksumMismatchError(DownloadError):
    """下载文件校验和与期望值不符"""

    code = "CHECKSUM_MISMATCH"

    def __init__(self, path: Path, expected: str, actual: str) -> None:
        super().__init__(
            f"校验和不匹配 {path}: 期望 {expected}, 实际 {actual}"
        )
        self.path = path
        self.expected = expected
        self.actual = actual


class BottleManifestError(DownloadError):
    """瓶子清单缺失或格式错误"""

    code = "BOTTLE_MANIFEST_ERROR"


class DownloadCancelledError(CellarError):
    """下载被取消（不属于可重试错误）"""

    code = "DOWNLOAD_CANCELLED"


class DownloadQueueClosedError(CellarError):
    """下载队列已关闭，不再接受新任务"""

    code = "QUEUE_CLOSED"


# =========================================================================
# 构建 / 链接
# =========================================================================

class BuildError(CellarError):
    """源码构建失败"""

    code = "BUILD_ERROR"

    def __init__(
        self, formula: str, message: str, *,
        command: str = "", returncode: int | None = None,
    ) -> None:
        super().__init__(f"{formula} 构建失败: {message}")
        self.formula = formula
        self.command = command
        self.returncode = returncode


class LinkError(CellarError):
    """链接到安装前缀失败"""

    code = "LINK_ERROR"


class ConflictError(LinkError):
    """链接目标已被其他文件占用"""

    code = "LINK_CONFLICT"

    def __init__(self, dst: Path, owner: str = "") -> None:
        detail = f"（属于 {owner}）" if owner else ""
        super().__init__(f"无法链接 {dst}: 目标已存在{detail}")
        self.dst = dst
        self.owner = owner


# =========================================================================
# 非错误
# =========================================================================

class AlreadyAttemptedError(CellarError):
    """本次运行已尝试过安装该包（经由另一条依赖路径到达），应被静默吸收"""

    code = "ALREADY_ATTEMPTED"

    def __init__(self, name: str) -> None:
        super().__init__(f"本次运行已尝试安装 {name}")
        self.name = name
