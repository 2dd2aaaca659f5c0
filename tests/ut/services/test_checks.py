"""安装前策略检查单元测试"""

from __future__ import annotations

import pytest

from cellar.core.exceptions import (
    CannotInstallFormulaError,
    ForbiddenFormulaError,
    ForbiddenLicenseError,
    ForbiddenTapError,
)
from cellar.services.installer.checks import (
    forbidden_formula_check,
    forbidden_license_check,
    forbidden_tap_check,
    license_to_string,
    licenses_forbid_installation,
)


class TestLicenseExpressions:
    def test_simple(self) -> None:
        assert licenses_forbid_installation("GPL-3.0", {"gpl-3.0"})
        assert not licenses_forbid_installation("MIT", {"gpl-3.0"})
        assert not licenses_forbid_installation(None, {"gpl-3.0"})

    def test_any_of_needs_all_forbidden(self) -> None:
        lic = {"any_of": ["GPL-3.0", "MIT"]}
        assert not licenses_forbid_installation(lic, {"gpl-3.0"})
        assert licenses_forbid_installation(lic, {"gpl-3.0", "mit"})
        assert not licenses_forbid_installation(["GPL-3.0", "MIT"], {"gpl-3.0"})

    def test_all_of_any_forbidden(self) -> None:
        lic = {"all_of": ["GPL-3.0", "MIT"]}
        assert licenses_forbid_installation(lic, {"gpl-3.0"})

    def test_nested(self) -> None:
        lic = {"any_of": ["MIT", {"all_of": ["GPL-3.0", "BSD"]}]}
        assert licenses_forbid_installation(lic, {"mit", "bsd"})
        assert license_to_string(lic) == "MIT or GPL-3.0 and BSD"

    def test_undeclared(self) -> None:
        assert license_to_string(None) == "未声明"


class TestPolicyChecks:
    def test_license_on_dependency(self, make_formula) -> None:
        app = make_formula("app", license="MIT")
        dep = make_formula("lib", license="GPL-3.0")
        with pytest.raises(ForbiddenLicenseError, match="依赖的 lib"):
            forbidden_license_check(app, [dep], forbidden_licenses=["GPL-3.0"], owner="管理员")
        forbidden_license_check(app, [dep], forbidden_licenses=["GPL-3.0"], owner="x", ignore_deps=True)

    def test_license_only_deps_skips_self(self, make_formula) -> None:
        app = make_formula("app", license="GPL-3.0")
        forbidden_license_check(app, [], forbidden_licenses=["gpl-3.0"], owner="x", only_deps=True)
        with pytest.raises(ForbiddenLicenseError):
            forbidden_license_check(app, [], forbidden_licenses=["gpl-3.0"], owner="x")

    def test_tap_allow_list(self, make_formula) -> None:
        app = make_formula("app", tap="thirdparty")
        with pytest.raises(ForbiddenTapError, match="未在允许的 tap 列表中"):
            forbidden_tap_check(app, [], forbidden_taps=[], allowed_taps=["other"], owner="x")
        forbidden_tap_check(make_formula("core-app"), [], forbidden_taps=["core"], allowed_taps=["other"], owner="x")

    def test_tap_forbidden_dependency(self, make_formula) -> None:
        dep = make_formula("lib", tap="evil")
        with pytest.raises(ForbiddenTapError, match="禁止的 tap"):
            forbidden_tap_check(make_formula("app"), [dep], forbidden_taps=["evil"], allowed_taps=[], owner="x")

    def test_formula_by_full_name(self, make_formula) -> None:
        dep = make_formula("lib", tap="t")
        with pytest.raises(ForbiddenFormulaError, match="t/lib"):
            forbidden_formula_check(make_formula("app"), [dep], forbidden_formulae=["t/lib"], owner="x")

    def test_errors_are_cannot_install(self) -> None:
        assert issubclass(ForbiddenFormulaError, CannotInstallFormulaError)
