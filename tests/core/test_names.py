"""
Tests for identifier generation and the CST builders.
"""

import libcst as cst

from unawait.core.builders import (
  and_,
  call,
  declare,
  function_def,
  if_,
  lambda_,
  not_,
  or_,
  parenthesize,
  return_,
  statement_list,
  tuple_,
)
from unawait.core.names import NameGenerator, suggest_name


def _code(node: cst.CSTNode) -> str:
  return cst.Module(body=[]).code_for_node(node)


def test_suggest_name():
  assert suggest_name(cst.parse_expression("fetch(url)")) == "fetch"
  assert suggest_name(cst.parse_expression("self.reader.read()")) == "read"
  assert suggest_name(cst.parse_expression("items[0]")) == "items"
  assert suggest_name(cst.parse_expression("1 + 2")) == "result"
  assert suggest_name(cst.parse_expression("1 + 2"), "value") == "value"


def test_fresh_names_avoid_module_identifiers():
  names = NameGenerator.for_module(cst.parse_module("_value = 1\n_result = _value\n"))
  assert names.fresh("value") == "_value2"
  assert names.fresh("value") == "_value3"
  assert names.fresh("result") == "_result2"
  assert names.fresh("__weird-name__") == "_weird_name__"
  assert {"_value2", "_value3"} <= names.generated


def test_flags_and_exact_names():
  names = NameGenerator(["_await"])
  flag = names.fresh_flag("interrupt")
  assert flag == "_interrupt"
  assert flag in names.flags
  assert names.exact("_await") == "_await2"
  assert names.exact("_for") == "_for"
  assert names.is_used("_for")


def test_keywords_are_reserved():
  names = NameGenerator()
  assert names.exact("match") == "match2"


def test_call_and_tuple_builders():
  assert _code(call("_await", cst.Name("x"), None)) == "_await(x, None)"
  assert _code(tuple_([cst.Name("a"), None])) == "(a, None)"


def test_boolean_builders_parenthesize():
  assert _code(and_(not_(cst.Name("a")), cst.parse_expression("b < c"))) == "(not a) and (b < c)"
  assert _code(not_(not_(cst.Name("a")))) == "a"
  assert _code(or_([cst.Name("a")])) == "a"
  assert _code(or_([cst.Name("a"), cst.Name("b"), cst.Name("c")])) == "a or b or c"
  assert _code(parenthesize(cst.parse_expression("(x)"))) == "(x)"


def test_statement_builders():
  module = cst.Module(
    body=[
      declare("value"),
      function_def("_resume", ["v"], [if_(cst.Name("v"), [return_(cst.Name("v"))], [return_()])]),
    ]
  )
  assert module.code == "value: object\ndef _resume(v):\n    if v:\n        return v\n    else:\n        return\n"
  assert _code(lambda_(["v"], cst.parse_expression("a, b"))) == "lambda v: (a, b)"


def test_statement_list_expands_one_line_suites():
  node = cst.parse_module("if x: a(); b()\n").body[0]
  statements = statement_list(node.body)
  assert len(statements) == 2
  assert all(isinstance(s, cst.SimpleStatementLine) for s in statements)
