"""
Async Generator Splitting.

An `async def` containing `yield` cannot return a single deferred value.
It is lowered in two parts:

1.  **Entry**: the body moves into an inner `async def` taking the generator
    object. Every `yield value` becomes `await <generator>._yield(value)`,
    so the entry lowers like any other coroutine.
2.  **Wrapper**: the function itself becomes a plain function returning
    `_AsyncGenerator(<entry>)`.

Parameters rebound by the body are declared `nonlocal` in the entry.
"""

from typing import List, Optional, Tuple

import libcst as cst

from unawait.analysis.awaits import contains_yield
from unawait.analysis.bindings import collect_scope
from unawait.core.builders import call, function_def, nonlocal_, split_docstring, statement_list
from unawait.core.desugar import SuperArguments
from unawait.errors import UnsupportedConstructError
from unawait.utils.node_source import source_of

Statements = List[cst.BaseStatement]


def is_async_generator(function: cst.FunctionDef) -> bool:
  return function.asynchronous is not None and contains_yield(function.body)


class _YieldRewriter(cst.CSTTransformer):
  """`yield value` -> `await <generator>._yield(value)`, in the function's own scope."""

  def __init__(self, generator: str) -> None:
    self.generator = generator

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    return False

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    return False

  def visit_Lambda(self, node: cst.Lambda) -> bool:
    return False

  def leave_Yield(self, original_node: cst.Yield, updated_node: cst.Yield) -> cst.BaseExpression:
    value = updated_node.value
    if isinstance(value, cst.From):
      raise UnsupportedConstructError("'yield from' inside an async function", source_of(original_node))
    method = cst.Attribute(value=cst.Name(self.generator), attr=cst.Name("_yield"))
    return cst.Await(expression=call(method, value), lpar=updated_node.lpar, rpar=updated_node.rpar)


def _first_parameter(function: cst.FunctionDef) -> Optional[str]:
  params = function.params
  positional = [*params.posonly_params, *params.params]
  return positional[0].name.value if positional else None


def split_generator(
  function: cst.FunctionDef,
  generator: str,
  entry: str,
  method: bool = False,
) -> Tuple[Statements, cst.FunctionDef]:
  """
  Moves the body of an async generator into its entry function.

  Args:
      function: The `async def` containing `yield`.
      generator: Parameter name of the entry, bound to the generator object.
      entry: Name of the entry function.
      method: True when `function` is defined in a class body; zero-argument
          `super()` calls then receive explicit arguments.

  Returns:
      Tuple[Statements, cst.FunctionDef]: The docstring statements (possibly
      empty) and the `async def` entry.
  """
  docstring, body = split_docstring(statement_list(function.body))
  first = _first_parameter(function)
  if method and first is not None:
    body = [statement.visit(SuperArguments(first)) for statement in body]
  rewriter = _YieldRewriter(generator)
  body = [statement.visit(rewriter) for statement in body]

  scope = collect_scope(function)
  rebound = sorted((scope.params & set(scope.assigned)) - scope.globals - scope.nonlocals)
  if rebound:
    body = [nonlocal_(rebound), *body]
  definition = function_def(entry, [generator], body).with_changes(asynchronous=cst.Asynchronous())
  return docstring, definition
