"""
Tests for the Suspension Point Locator.
"""

import libcst as cst

from unawait.analysis.awaits import (
  contains_await,
  contains_yield,
  find_dynamic_evaluation,
  locate_first_await,
)


def _statement(code: str) -> cst.BaseStatement:
  return cst.parse_module(code).body[0]


def _code(node: cst.CSTNode) -> str:
  return cst.Module(body=[]).code_for_node(node)


def test_contains_await_forms():
  assert contains_await(_statement("x = await f()\n"))
  assert contains_await(_statement("async for x in y:\n    pass\n"))
  assert contains_await(_statement("async with a:\n    pass\n"))
  assert contains_await(_statement("x = [i async for i in y]\n"))
  assert not contains_await(_statement("x = f()\n"))


def test_nested_scopes_are_skipped_except_headers():
  assert not contains_await(_statement("async def g():\n    await f()\n"))
  assert not contains_await(_statement("h = lambda: g()\n"))
  assert contains_await(_statement("def g(a=await f()):\n    pass\n"))
  assert contains_await(_statement("@deco(await f())\ndef g():\n    pass\n"))


def test_assignment_value_is_evaluated_before_target():
  chain = locate_first_await(_statement("a[await i()] = await v()\n"))
  assert _code(chain[-1]) == "await v()"


def test_conditional_expression_test_first():
  chain = locate_first_await(_statement("x = (await a()) if await t() else (await b())\n"))
  assert _code(chain[-1]) == "await t()"


def test_inner_await_is_evaluated_first():
  chain = locate_first_await(_statement("x = await f(await g())\n"))
  assert _code(chain[-1]) == "await g()"
  assert isinstance(chain[2], cst.Await)


def test_chain_starts_at_statement():
  statement = _statement("log(await f())\n")
  chain = locate_first_await(statement)
  assert chain[0] is statement
  assert isinstance(chain[-1], cst.Await)
  assert locate_first_await(_statement("log(1)\n")) is None


def test_contains_yield():
  assert contains_yield(_statement("x = yield 1\n"))
  assert not contains_yield(_statement("def g():\n    yield 1\n"))


def test_find_dynamic_evaluation():
  assert find_dynamic_evaluation(_statement("eval('1')\n")) is not None
  assert find_dynamic_evaluation(_statement("x = locals()\n")) is not None
  assert find_dynamic_evaluation(_statement("x = vars(obj)\n")) is None
  assert find_dynamic_evaluation(_statement("x = f()\n")) is None
