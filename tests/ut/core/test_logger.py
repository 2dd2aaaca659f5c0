"""日志配置与包名上下文测试"""

from __future__ import annotations

import json
import logging
import threading

from cellar.utils.logger import (
    FormulaContextFilter,
    JSONFormatter,
    current_formula,
    formula_context,
    setup_logging,
)


def _record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord("cellar.test", logging.INFO, __file__, 1, msg, None, None)


class TestFormulaContext:
    def test_nested_restores_outer(self) -> None:
        assert current_formula() == ""
        with formula_context("app"):
            with formula_context("lib"):
                assert current_formula() == "lib"
            assert current_formula() == "app"
        assert current_formula() == ""

    def test_thread_local(self) -> None:
        seen = []
        with formula_context("app"):
            t = threading.Thread(target=lambda: seen.append(current_formula()))
            t.start()
            t.join()
        assert seen == [""]

    def test_filter_tags_record(self) -> None:
        record = _record()
        with formula_context("lib"):
            FormulaContextFilter().filter(record)
        assert record.formula == "lib"
        assert record.formula_tag == " [lib]"

    def test_filter_without_context(self) -> None:
        record = _record()
        FormulaContextFilter().filter(record)
        assert record.formula_tag == ""


class TestJSONFormatter:
    def test_includes_formula(self) -> None:
        record = _record("安装中")
        record.formula = "lib"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "安装中"
        assert entry["formula"] == "lib"
        assert entry["level"] == "INFO"

    def test_omits_empty_formula(self) -> None:
        record = _record()
        FormulaContextFilter().filter(record)
        assert "formula" not in json.loads(JSONFormatter().format(record))


class TestSetupLogging:
    def test_single_handler(self) -> None:
        setup_logging("DEBUG")
        setup_logging("WARNING", json_output=True)
        root = logging.getLogger()
        assert len(root.handlers) == 1
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
