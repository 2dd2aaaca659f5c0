"""Version / PkgVersion 单元测试"""

from __future__ import annotations

import pytest

from cellar.core.versions import PkgVersion, Version


class TestVersion:
    @pytest.mark.parametrize(("a", "b"), [
        ("1.0", "1.1"),
        ("1.9", "1.10"),
        ("1.0rc1", "1.0"),
        ("2024a", "2024b"),
        ("1.2.3-p1", "1.2.3-p2"),
    ])
    def test_ordering(self, a: str, b: str) -> None:
        assert Version(a) < Version(b)
        assert Version(b) > Version(a)

    def test_trailing_zeros_equal(self) -> None:
        assert Version("1.0") == Version("1.0.0")
        assert hash(Version("1.0")) == hash(Version("1.0.0"))

    def test_str_keeps_raw(self) -> None:
        assert str(Version(" 3.2 ")) == "3.2"


class TestPkgVersion:
    def test_parse_with_revision(self) -> None:
        pv = PkgVersion.parse("1.2.3_4")
        assert pv.version == Version("1.2.3")
        assert pv.revision == 4
        assert str(pv) == "1.2.3_4"

    def test_parse_without_revision(self) -> None:
        pv = PkgVersion.parse("2.0")
        assert pv.revision == 0
        assert str(pv) == "2.0"

    def test_revision_breaks_tie(self) -> None:
        assert PkgVersion("1.0", 1) > PkgVersion("1.0", 0)
        assert PkgVersion("1.1", 0) > PkgVersion("1.0", 5)
