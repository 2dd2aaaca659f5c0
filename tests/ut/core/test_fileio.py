"""YAML / JSON 读写测试"""

from __future__ import annotations

from pathlib import Path

import pytest

from cellar.core.exceptions import ConfigError, ValidationError
from cellar.utils.fileio import atomic_write, load_json, load_yaml, save_json


class TestAtomicWrite:
    def test_creates_parents(self, tmp_path: Path) -> None:
        target = tmp_path / "a" / "b" / "f.txt"
        atomic_write(target, "内容", durable=True)
        assert target.read_text(encoding="utf-8") == "内容"
        assert [p.name for p in target.parent.iterdir()] == ["f.txt"]

    def test_failure_keeps_original(self, tmp_path: Path, monkeypatch) -> None:
        target = tmp_path / "f.txt"
        target.write_text("old", encoding="utf-8")

        def boom(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr("cellar.utils.fileio.os.replace", boom)
        with pytest.raises(OSError):
            atomic_write(target, "new")
        assert target.read_text(encoding="utf-8") == "old"
        assert [p.name for p in tmp_path.iterdir()] == ["f.txt"]


class TestYaml:
    def test_keeps_key_order(self, tmp_path: Path) -> None:
        path = tmp_path / "c.yml"
        path.write_text("prefix: /opt/cellar\nforbidden_licenses: [GPL-3.0]\n名称: 值\n", encoding="utf-8")
        assert list(load_yaml(path)) == ["prefix", "forbidden_licenses", "名称"]

    def test_missing_and_empty(self, tmp_path: Path) -> None:
        assert load_yaml(tmp_path / "none.yml") == {}
        (tmp_path / "empty.yml").write_text("", encoding="utf-8")
        assert load_yaml(tmp_path / "empty.yml") == {}

    def test_syntax_error(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text("formulae: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="bad.yml"):
            load_yaml(path)

    def test_top_level_must_be_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "list.yml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="映射"):
            load_yaml(path)


class TestJson:
    def test_missing_or_blank(self, tmp_path: Path) -> None:
        assert load_json(tmp_path / "none.json") is None
        (tmp_path / "blank.json").write_text("  \n", encoding="utf-8")
        assert load_json(tmp_path / "blank.json") is None

    def test_corrupt(self, tmp_path: Path) -> None:
        path = tmp_path / "r.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ValidationError):
            load_json(path)

    def test_non_object(self, tmp_path: Path) -> None:
        path = tmp_path / "r.json"
        save_json(path, [1, 2])
        with pytest.raises(ValidationError, match="JSON 对象"):
            load_json(path)
