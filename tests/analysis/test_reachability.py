"""
Tests for Control Reachability Analysis.
"""

import libcst as cst
import pytest

from unawait.analysis.reachability import (
  always_exits,
  is_irrefutable,
  is_statically_true,
  paths_break,
  paths_return,
  paths_return_or_raise,
)


def _body(code: str):
  return list(cst.parse_module(code).body)


def test_if_with_both_branches_returning():
  statements = _body("if x:\n    return 1\nelse:\n    return 2\n")
  flow = paths_return(statements)
  assert flow.any and flow.all
  assert always_exits(statements)


def test_if_without_else_falls_through():
  statements = _body("if x:\n    return 1\n")
  flow = paths_return(statements)
  assert flow.any and not flow.all
  assert not always_exits(statements)


def test_statements_after_exit_are_unreachable():
  statements = _body("raise ValueError()\nreturn 1\n")
  assert not paths_return(statements).any
  assert paths_return_or_raise(statements).all


def test_break_in_nested_loop_is_not_an_exit():
  loop = _body("while a:\n    for x in y:\n        break\n")[0]
  assert not paths_break(loop.body.body).any


def test_break_directly_in_block():
  assert paths_break(_body("if a:\n    break\n")).any


def test_infinite_loop_without_break():
  loop = _body("while True:\n    return 1\n")
  assert paths_return(loop).all
  assert always_exits(loop)


def test_infinite_loop_with_break_completes():
  loop = _body("while True:\n    if a:\n        break\n    return 1\n")
  assert not paths_return(loop).all
  assert not always_exits(loop)


def test_finally_dominates_try():
  statements = _body("try:\n    pass\nfinally:\n    return 1\n")
  assert paths_return(statements).all


def test_try_requires_every_handler():
  statements = _body("try:\n    return 1\nexcept ValueError:\n    pass\n")
  flow = paths_return(statements)
  assert flow.any and not flow.all


def test_match_requires_irrefutable_case():
  partial = _body("match v:\n    case 1:\n        return 1\n")
  exhaustive = _body("match v:\n    case 1:\n        return 1\n    case _:\n        return 2\n")
  assert not paths_return(partial).all
  assert paths_return(exhaustive).all


def test_nested_definitions_are_opaque():
  statements = _body("def inner():\n    return 1\n")
  assert not paths_return(statements).any


@pytest.mark.parametrize(
  "source, expected",
  [("True", True), ("1", True), ("'x'", True), ("0", False), ("''", False), ("False", False), ("flag", False)],
)
def test_is_statically_true(source, expected):
  assert is_statically_true(cst.parse_expression(source)) is expected


def test_is_irrefutable():
  def pattern(source):
    return _body(f"match v:\n    case {source}:\n        pass\n")[0].cases[0].pattern

  assert is_irrefutable(pattern("_"))
  assert is_irrefutable(pattern("name"))
  assert is_irrefutable(pattern("1 | _"))
  assert not is_irrefutable(pattern("[a, b]"))
