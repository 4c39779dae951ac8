"""
Tests for the LoweringEngine pipeline.

Verifies that:
1.  Parse errors are reported without raising.
2.  Every `async def` is lowered, innermost first, with its qualified name.
3.  Functions that cannot be lowered are kept and reported.
4.  Helper imports land after docstrings and `__future__` imports.
"""

import textwrap

import libcst as cst
import pytest

import unawait
from unawait.config import LoweringConfig
from unawait.core.engine import LoweringEngine
from unawait.core.tracer import TraceEventType


def _run(code: str, **options):
  return LoweringEngine(LoweringConfig(**options)).run(textwrap.dedent(code).lstrip("\n"))


def _async_defs(code: str):
  module = cst.parse_module(code)
  found = []

  class _Finder(cst.CSTVisitor):
    def visit_FunctionDef(self, node: cst.FunctionDef) -> None:
      if node.asynchronous is not None:
        found.append(node.name.value)

  module.visit(_Finder())
  return found


def test_parse_error_is_reported():
  result = _run("async def broken(:\n    pass\n")
  assert not result.success
  assert result.errors[0].startswith("Parse Error")
  assert result.code == "async def broken(:\n    pass\n"


def test_module_without_async_is_unchanged():
  code = "def f(x):\n    return x\n"
  result = _run(code)
  assert result.success
  assert result.code == code
  assert result.helpers == []


def test_qualified_names_innermost_first():
  result = _run(
    """
    class Service:
        async def fetch(self):
            async def inner():
                return 1
            return await inner()

    async def main():
        return await Service().fetch()
    """
  )
  assert result.success
  assert result.lowered_functions == ["Service.fetch.<locals>.inner", "Service.fetch", "main"]
  assert _async_defs(result.code) == []


def test_unsupported_function_is_kept():
  result = _run(
    """
    async def snapshot():
        return locals()

    async def dynamic():
        return eval("1")

    async def fine():
        return 1
    """
  )
  assert not result.success
  assert len(result.errors) == 2
  assert result.errors[0].startswith("snapshot: ")
  assert result.errors[1].startswith("dynamic: ")
  assert _async_defs(result.code) == ["snapshot", "dynamic"]
  assert result.lowered_functions == ["fine"]


def test_helper_import_follows_docstring_and_future():
  result = _run(
    '''
    """Module docstring."""
    from __future__ import annotations

    async def f(x):
        return await x
    '''
  )
  lines = result.code.splitlines()
  assert lines[0] == '"""Module docstring."""'
  assert lines[1] == "from __future__ import annotations"
  assert lines[2] == "from unawait.runtime.helpers import _await"
  assert lines[3:5] == ["", ""]
  assert lines[5] == "def f(x):"
  assert result.helpers == ["_await"]


def test_plain_return_is_resolved_without_decorator():
  result = _run(
    """
    async def g():
        return 1
    """
  )
  assert "return _resolve(1)" in result.code
  assert "@_async" not in result.code


def test_returning_an_await_needs_no_wrapper():
  result = _run(
    """
    async def f(x):
        return await x
    """
  )
  assert "return _await(x)" in result.code
  assert "@_async" not in result.code
  assert "_resolve" not in result.code
  assert result.helpers == ["_await"]


def test_possibly_throwing_body_is_decorated():
  result = _run(
    """
    async def f(x):
        value = await x.load()
        return value.name
    """
  )
  assert "@_async" in result.code
  assert "_async" in result.helpers


def test_trace_records_phases_and_suspensions():
  result = _run(
    """
    async def f(a):
        x = await a
        return x
    """
  )
  types = [event["type"] for event in result.trace_events]
  assert types[0] == TraceEventType.PHASE_START
  assert TraceEventType.SUSPENSION in types
  assert TraceEventType.HELPER_REFERENCE in types
  assert types.count(TraceEventType.PHASE_START) == types.count(TraceEventType.PHASE_END)
  assert result.stats == {"suspensions": 1, "restructured": 0, "warnings": 0}
  assert result.trace_events[0]["id"] == "evt-0001"


def test_generated_names_avoid_user_names():
  result = _run(
    """
    _resume = "user"

    async def f(a):
        x = await a
        log(x)
        return x
    """
  )
  assert '_resume = "user"' in result.code
  assert "def _resume2(" in result.code


def test_lower_convenience_wrapper():
  code = unawait.lower("async def f(x):\n    return await x\n", target="modern")
  assert code.startswith("from unawait.runtime.helpers import _await\n")


def test_lower_raises_on_failure():
  with pytest.raises(unawait.LoweringError, match="snapshot"):
    unawait.lower("async def snapshot():\n    return locals()\n")


def test_dynamic_evaluation_without_await_is_kept():
  result = _run(
    """
    async def compute():
        return eval("1 + 1")
    """
  )
  assert not result.success
  assert "Dynamic evaluation" in result.errors[0]
  assert _async_defs(result.code) == ["compute"]
  assert result.helpers == []


def test_async_generator_is_split():
  result = _run(
    """
    async def ticker(n):
        \"\"\"Counts down.\"\"\"
        while n:
            n -= 1
            received = yield n
            log(received)
    """
  )
  assert result.success, result.errors
  assert result.lowered_functions == ["ticker.<generator>", "ticker"]
  assert "yield n" not in result.code
  assert "_generator._yield(n)" in result.code
  assert "_AsyncGenerator" in result.helpers
  assert "return _AsyncGenerator(_generator_body)" in result.code
  assert "nonlocal n" in result.code
  assert result.code.splitlines()[3:5] == ["def ticker(n):", '    """Counts down."""']

