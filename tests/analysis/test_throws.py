"""
Tests for the Synchronous Exception Analysis.
"""

import libcst as cst
import pytest

from unawait.analysis.throws import SyncThrowAnalyzer

_HELPERS = {name: name for name in ("_await", "_continue", "_catch", "_for", "_empty", "_for_of", "_resolve")}


def _can_throw(code: str, safe=("x", "True", "False", "None"), flags=("_interrupt",)) -> bool:
  statements = list(cst.parse_module(code).body)
  return SyncThrowAnalyzer(_HELPERS, set(safe), set(flags)).can_throw(statements)


@pytest.mark.parametrize(
  "code",
  [
    "return _await(x)\n",
    "pass\nreturn 1\n",
    "_interrupt = False\nreturn _resolve(x)\n",
    "def _resume(v):\n    return v\nreturn _await(x, _resume)\n",
    "def _recover(e):\n    return None\nreturn _catch(x, _recover)\n",
    "if _interrupt:\n    return 1\nreturn 2\n",
  ],
)
def test_provably_safe_bodies(code):
  assert not _can_throw(code)


@pytest.mark.parametrize(
  "code",
  [
    "return x.attr\n",
    "return unknown\n",
    "return f(x)\n",
    "x.y = 1\n",
    "if x > 1:\n    return 1\n",
    "return _for_of(x, _empty)\n",
    "def _resume():\n    return missing()\nreturn _continue(x, _resume)\n",
    "def _recover(e):\n    raise e\nreturn _catch(x, _recover)\n",
    "return _await(x, lambda v: v.attr, True)\n",
  ],
)
def test_possibly_throwing_bodies(code):
  assert _can_throw(code)


def test_statements_after_exit_are_ignored():
  assert not _can_throw("return 1\nraise ValueError()\n")


def test_recursive_closure_is_conservative():
  code = "def _body():\n    return _continue(x, _body)\nreturn _body()\n"
  assert _can_throw(code)
