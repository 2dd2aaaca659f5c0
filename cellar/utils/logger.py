"""cellar 日志配置

文本与 JSON 两种输出格式。安装与下载在多个线程中交错进行，
用 formula_context() 标记当前线程正在处理的包，每条日志都会带上包名。
"""

from __future__ import annotations

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

_context = threading.local()

TEXT_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s%(formula_tag)s: %(message)s"


@contextmanager
def formula_context(name: str) -> Iterator[None]:
    """在当前线程内把日志归属到包 name，可嵌套，退出时恢复外层包名"""
    previous = getattr(_context, "formula", "")
    _context.formula = name
    try:
        yield
    finally:
        _context.formula = previous


def current_formula() -> str:
    return getattr(_context, "formula", "")


class FormulaContextFilter(logging.Filter):
    """给日志记录补上 formula / formula_tag 字段"""

    def filter(self, record: logging.LogRecord) -> bool:
        formula = getattr(record, "formula", "") or current_formula()
        record.formula = formula
        record.formula_tag = f" [{formula}]" if formula else ""
        return True


class JSONFormatter(logging.Formatter):
    """结构化 JSON 日志格式器，便于 CI 流水线消费

    输出格式:
        {
            "timestamp": "2024-01-01T12:00:00+00:00",
            "level": "INFO",
            "logger": "cellar.services.session",
            "message": "log message",
            "thread": "cellar-fetch_0",
            "formula": "openssl@3" (仅在 formula_context 内),
            "exception": "traceback..." (仅在有异常时)
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "thread": record.threadName,
        }
        formula = getattr(record, "formula", "")
        if formula:
            entry["formula"] = formula
        if record.exc_info and record.exc_info[1]:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """配置根日志器

    参数:
        level: 日志级别字符串（DEBUG, INFO, WARNING, ERROR, CRITICAL）
        json_output: 为 True 时使用 JSON 格式（适用于 CI），否则使用人类可读格式

    输出到 stderr，stdout 留给安装摘要和下载进度表。重复调用会先清理已有 handlers。
    """
    reset_logging()
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(FormulaContextFilter())
    handler.setFormatter(JSONFormatter() if json_output else logging.Formatter(TEXT_FORMAT))
    root.addHandler(handler)


def reset_logging() -> None:
    """移除根日志器上的全部 handlers，级别恢复为默认的 WARNING"""
    root = logging.getLogger()
    root.setLevel(logging.WARNING)
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
