"""安装前的策略检查

全部在 prelude 阶段、任何文件系统变更之前执行；失败抛出 CannotInstallFormulaError 的子类。
依赖与包本身分别检查：忽略依赖时跳过依赖部分，only_deps 时跳过包本身。
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from cellar.core.exceptions import (
    ForbiddenFormulaError,
    ForbiddenLicenseError,
    ForbiddenTapError,
)
from cellar.core.formula import CORE_TAP, Formula

logger = logging.getLogger(__name__)


def licenses_forbid_installation(license: str | dict[str, Any] | list | None, forbidden: set[str]) -> bool:
    """许可证表达式是否被禁止

    字符串: 在禁止列表中即禁止；{"any_of": [...]}: 全部备选都被禁止才禁止；
    {"all_of": [...]}: 任一被禁止即禁止。未声明许可证不禁止。
    """
    if not license or not forbidden:
        return False
    if isinstance(license, str):
        return license.lower() in forbidden
    if isinstance(license, list):
        license = {"any_of": license}
    if "any_of" in license:
        return all(licenses_forbid_installation(item, forbidden) for item in license["any_of"])
    if "all_of" in license:
        return any(licenses_forbid_installation(item, forbidden) for item in license["all_of"])
    return False


def license_to_string(license: str | dict[str, Any] | list | None) -> str:
    if not license:
        return "未声明"
    if isinstance(license, str):
        return license
    if isinstance(license, list):
        license = {"any_of": license}
    if "any_of" in license:
        return " or ".join(license_to_string(i) for i in license["any_of"])
    if "all_of" in license:
        return " and ".join(license_to_string(i) for i in license["all_of"])
    return str(license)


def forbidden_license_check(
    formula: Formula, dependencies: Iterable[Formula], *,
    forbidden_licenses: Iterable[str], owner: str,
    ignore_deps: bool = False, only_deps: bool = False,
) -> None:
    forbidden = {lic.lower() for lic in forbidden_licenses}
    if not forbidden:
        return
    if not ignore_deps:
        for dep in dependencies:
            if licenses_forbid_installation(dep.license, forbidden):
                raise ForbiddenLicenseError(
                    f"{formula.name} 依赖的 {dep.name} 的许可证全部被 {owner} 禁止: "
                    f"{license_to_string(dep.license)}"
                )
    if only_deps:
        return
    if licenses_forbid_installation(formula.license, forbidden):
        raise ForbiddenLicenseError(
            f"{formula.name} 的许可证全部被 {owner} 禁止: {license_to_string(formula.license)}"
        )


def _tap_problem(tap: str, forbidden: set[str], allowed: set[str]) -> str:
    # 核心 tap 总是允许
    if tap == CORE_TAP:
        return ""
    problems = []
    if allowed and tap not in allowed:
        problems.append("未在允许的 tap 列表中")
    if tap in forbidden:
        problems.append("在禁止的 tap 列表中")
    return "，且".join(problems)


def forbidden_tap_check(
    formula: Formula, dependencies: Iterable[Formula], *,
    forbidden_taps: Iterable[str], allowed_taps: Iterable[str], owner: str,
    ignore_deps: bool = False, only_deps: bool = False,
) -> None:
    forbidden, allowed = set(forbidden_taps), set(allowed_taps)
    if not forbidden and not allowed:
        return
    if not ignore_deps:
        for dep in dependencies:
            problem = _tap_problem(dep.tap, forbidden, allowed)
            if problem:
                raise ForbiddenTapError(
                    f"{formula.name} 的依赖 {dep.name} 来自 tap {dep.tap}，该 tap {problem}（{owner}）"
                )
    if only_deps:
        return
    problem = _tap_problem(formula.tap, forbidden, allowed)
    if problem:
        raise ForbiddenTapError(f"{formula.full_name} 来自 tap {formula.tap}，该 tap {problem}（{owner}）")


def forbidden_formula_check(
    formula: Formula, dependencies: Iterable[Formula], *,
    forbidden_formulae: Iterable[str], owner: str,
    ignore_deps: bool = False, only_deps: bool = False,
) -> None:
    forbidden = set(forbidden_formulae)
    if not forbidden:
        return
    if not ignore_deps:
        for dep in dependencies:
            hit = dep.name if dep.name in forbidden else dep.full_name if dep.full_name in forbidden else ""
            if hit:
                raise ForbiddenFormulaError(f"{formula.name} 依赖的 {hit} 已被 {owner} 禁止安装")
    if only_deps:
        return
    hit = formula.name if formula.name in forbidden else formula.full_name if formula.full_name in forbidden else ""
    if hit:
        raise ForbiddenFormulaError(f"{hit} 已被 {owner} 禁止安装")
