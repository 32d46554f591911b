# PATH: tests/unit/test_logging_contract.py
"""
Source-level logging and error-handling contract.

Logger calls take context only through extra={"context": {...}}; stray
keyword arguments would crash at runtime on a stdlib logger. Production
code never uses a bare except.
"""

import ast
import json
import logging
import unittest
from pathlib import Path
from typing import Iterator, Tuple

from core.logging import (
    JSONFormatter,
    clear_global_context,
    get_logger,
    set_global_context,
)

PROJECT_ROOT = Path(__file__).parent.parent.parent
SOURCE_DIRS = ("core", "chains", "dex", "strategy", "execution", "monitoring", "config")
LOG_METHODS = {"debug", "info", "warning", "error", "critical", "exception"}
PERMITTED = {"exc_info", "extra", "stack_info", "stacklevel"}


def source_files() -> Iterator[Path]:
    yield PROJECT_ROOT / "run_bot.py"
    for package in SOURCE_DIRS:
        yield from sorted((PROJECT_ROOT / package).rglob("*.py"))


def is_logger_target(call: ast.Call) -> bool:
    func = call.func
    if not isinstance(func, ast.Attribute) or func.attr not in LOG_METHODS:
        return False
    target = func.value
    name = target.id if isinstance(target, ast.Name) else getattr(target, "attr", None)
    return name == "logger"


def stray_kwargs(tree: ast.AST) -> Iterator[Tuple[int, str, str]]:
    for node in ast.walk(tree):
        if isinstance(node, ast.Call) and is_logger_target(node):
            for keyword in node.keywords:
                if keyword.arg is not None and keyword.arg not in PERMITTED:
                    yield node.lineno, node.func.attr, keyword.arg


class TestSourceContract(unittest.TestCase):
    def test_logger_calls_only_use_extra(self):
        problems = [
            f"{path.relative_to(PROJECT_ROOT)}:{line} logger.{method}({kwarg}=...)"
            for path in source_files()
            for line, method, kwarg in stray_kwargs(ast.parse(path.read_text(encoding="utf-8")))
        ]
        self.assertEqual(problems, [], "\n".join(problems))

    def test_no_bare_except(self):
        problems = [
            f"{path.relative_to(PROJECT_ROOT)}:{node.lineno}"
            for path in source_files()
            for node in ast.walk(ast.parse(path.read_text(encoding="utf-8")))
            if isinstance(node, ast.ExceptHandler) and node.type is None
        ]
        self.assertEqual(problems, [], "\n".join(problems))

    def test_detector_flags_stray_kwarg(self):
        tree = ast.parse("logger.info('quote', venue='x')\nself.logger.warning('x', extra={})")
        self.assertEqual(list(stray_kwargs(tree)), [(1, "info", "venue")])


class TestJSONFormatter(unittest.TestCase):
    def tearDown(self):
        clear_global_context()

    def _format(self, record: logging.LogRecord) -> dict:
        return json.loads(JSONFormatter().format(record))

    def test_context_and_global_context_merged(self):
        set_global_context(service="polyarb")
        record = logging.LogRecord("dex.aggregator", logging.WARNING, __file__, 1, "Venue quote failed", None, None)
        record.context = {"venue": "quickswap", "error_code": "QUOTE_TIMEOUT"}

        entry = self._format(record)
        self.assertEqual(entry["level"], "WARNING")
        self.assertEqual(entry["logger"], "dex.aggregator")
        self.assertEqual(entry["message"], "Venue quote failed")
        self.assertEqual(entry["context"], {
            "service": "polyarb",
            "venue": "quickswap",
            "error_code": "QUOTE_TIMEOUT",
        })

    def test_no_context_key_when_empty(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "plain", None, None)
        self.assertNotIn("context", self._format(record))

    def test_call_context_overrides_global(self):
        set_global_context(mode="dry_run")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "m", None, None)
        record.context = {"mode": "live"}
        self.assertEqual(self._format(record)["context"], {"mode": "live"})

    def test_adapter_merges_default_context(self):
        adapter = get_logger("test.adapter", venue="uniswap_v3")
        msg, kwargs = adapter.process("hello", {"extra": {"context": {"pair": "WMATIC/USDC"}}})
        self.assertEqual(kwargs["extra"]["context"], {"venue": "uniswap_v3", "pair": "WMATIC/USDC"})
