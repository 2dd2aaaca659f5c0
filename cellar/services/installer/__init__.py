"""单包安装编排

- models.py: 状态机、安装选项、结果与报告
- checks.py: 许可证 / tap / 包名禁止策略
- steps.py: 浇注、构建、链接、post_install 步骤
- installer.py: FormulaInstaller 协调器
"""

from cellar.services.installer.installer import FormulaInstaller
from cellar.services.installer.models import (
    InstallOptions,
    InstallOutcome,
    InstallReport,
    InstallState,
    OutcomeStatus,
)
from cellar.services.installer.steps import InstallSteps, KegBackup

__all__ = [
    "FormulaInstaller",
    "InstallOptions",
    "InstallOutcome",
    "InstallReport",
    "InstallState",
    "InstallSteps",
    "KegBackup",
    "OutcomeStatus",
]
