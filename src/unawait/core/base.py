"""
Base Lowerer Implementation.

This module provides `BaseLowerer`, the foundation of the `FunctionLowerer`
mixins. It owns the function-scoped state of one lowering job and the block
rewriting loop shared by every mixin:

1.  **Naming**: temporaries, flags and closures drawn from the module-wide
    `NameGenerator`, recorded per function so that the scope fixer and the
    hoisting pass can recognize them.
2.  **Closures**: synthesized `def` statements (or lambdas for the MODERN
    target) and continuations with passthrough elision.
3.  **Block rewriting**: statements are emitted unchanged until the first one
    containing a suspension point. That statement and everything after it
    (the tail) are handed to the flattener or the restructurer, which place
    the tail inside a continuation.
"""

from typing import AbstractSet, List, Optional, Sequence, Set, Tuple

import libcst as cst

from unawait.analysis.awaits import contains_await, locate_first_await
from unawait.analysis.bindings import BindingContext
from unawait.core.builders import function_def, is_name, lambda_, return_
from unawait.core.context import LoweringContext
from unawait.enums import LoweringTarget
from unawait.errors import StructuralInvariantError, UnsupportedConstructError
from unawait.utils.node_source import source_of

Statements = List[cst.BaseStatement]


def _is_pass(statement: cst.BaseStatement) -> bool:
  return isinstance(statement, cst.SimpleStatementLine) and all(isinstance(s, cst.Pass) for s in statement.body)


def _single_return(body: Sequence[cst.BaseStatement]) -> Optional[cst.BaseExpression]:
  if len(body) != 1 or not isinstance(body[0], cst.SimpleStatementLine) or len(body[0].body) != 1:
    return None
  small = body[0].body[0]
  if isinstance(small, cst.Return) and small.value is not None:
    return small.value
  return None


def _has_walrus(node: cst.CSTNode) -> bool:
  found = []

  class _Finder(cst.CSTVisitor):
    def visit_NamedExpr(self, node: cst.NamedExpr) -> bool:
      found.append(node)
      return False

  node.visit(_Finder())
  return bool(found)


class BaseLowerer:
  """
  Function-scoped lowering state and the block rewriting loop.

  Attributes:
      context: Module-wide state (names, helpers, tracer, config).
      function: The async function being lowered (after desugaring).
      enclosing: Names bound by enclosing function scopes.
      method: True when the function is defined directly in a class body.
      bindings: Binding queries, available once the body is analyzed.
      closures: Names of closures synthesized for this function.
      temporaries: Generated variables owned by this function.
      exit_flag: Function-level return sentinel, created lazily.
  """

  def __init__(
    self,
    context: LoweringContext,
    function: cst.FunctionDef,
    enclosing: AbstractSet[str] = frozenset(),
    method: bool = False,
  ) -> None:
    self.context = context
    self.config = context.config
    self.names = context.names
    self.tracer = context.tracer
    self.function = function
    self.enclosing = enclosing
    self.method = method
    self.bindings: Optional[BindingContext] = None
    self.closures: Set[str] = set()
    self.temporaries: Set[str] = set()
    self.exit_flag: Optional[str] = None
    self._internal_returns: Set[int] = set()

  # --- Naming ---

  def temporary(self, base: str) -> str:
    name = self.names.fresh(base)
    self.temporaries.add(name)
    return name

  def flag(self, base: str) -> str:
    name = self.names.fresh_flag(base)
    self.temporaries.add(name)
    return name

  def function_exit_flag(self) -> str:
    if self.exit_flag is None:
      self.exit_flag = self.flag("exit")
    return self.exit_flag

  # --- Helpers ---

  def helper(self, name: str) -> cst.Name:
    return self.context.helper(name)

  def helper_call(self, name: str, *args: Optional[cst.BaseExpression]) -> cst.Call:
    """Builds `<helper>(args...)`, dropping trailing `None` arguments."""
    values = list(args)
    while values and values[-1] is None:
      values.pop()
    arguments = [cst.Arg(cst.Name("None") if value is None else value) for value in values]
    return cst.Call(func=self.helper(name), args=arguments)

  def internal_return(self, value: cst.BaseExpression) -> cst.SimpleStatementLine:
    """A generated `return` that exit normalization must leave alone."""
    statement = return_(value)
    self._internal_returns.add(id(statement.body[0]))
    return statement

  # --- Closures ---

  def closure(
    self,
    base: str,
    params: Sequence[str],
    body: Sequence[cst.BaseStatement],
  ) -> Tuple[Statements, cst.BaseExpression]:
    """
    Synthesizes a closure.

    Args:
        base: Base of the closure name (`branch`, `body`, `resume`, ...).
        params: Parameter names.
        body: Statements of the closure.

    Returns:
        The statements defining the closure (empty for lambdas and the
        shared `_empty` helper) and the expression referring to it.
    """
    statements = [s for s in body if not _is_pass(s)]
    if not statements:
      return [], self.helper("_empty")
    value = _single_return(statements)
    if self.config.target is LoweringTarget.MODERN and value is not None and not _has_walrus(value):
      return [], lambda_(params, value)
    name = self.names.fresh(base)
    self.closures.add(name)
    return [function_def(name, params, statements)], cst.Name(name)

  def continuation(
    self, param: str, body: Sequence[cst.BaseStatement]
  ) -> Tuple[Statements, Optional[cst.BaseExpression]]:
    """
    Builds the continuation receiving a resolved value as `param`.

    Returns `None` as the reference when the continuation would only return
    its argument; the caller then omits it.
    """
    value = _single_return(body)
    if value is not None and is_name(value, param):
      return [], None
    return self.closure("resume", [param], body)

  # --- Block rewriting ---

  def rewrite(self, statements: Sequence[cst.BaseStatement], frames: list) -> Statements:
    """
    Rewrites a statement list so that no suspension point remains.

    Args:
        statements: The block, already desugared.
        frames: Restructured constructs enclosing the block (innermost last).

    Returns:
        List of statements.
    """
    out: Statements = []
    for index, statement in enumerate(statements):
      if contains_await(statement):
        out.extend(self.rewrite_suspending(statement, list(statements[index + 1 :]), frames))
        return out
      out.extend(self.emit(statement, frames))
    return out

  def rewrite_suspending(self, statement: cst.BaseStatement, tail: Statements, frames: list) -> Statements:
    """Dispatches a statement containing a suspension point."""
    if self.is_header_suspension(statement):
      return self.suspend(statement, tail, frames)
    if isinstance(statement, cst.If):
      return self.restructure_if(statement, tail, frames)
    if isinstance(statement, (cst.While, cst.For)):
      return self.restructure_loop(statement, tail, frames)
    if isinstance(statement, cst.Match):
      return self.restructure_match(statement, tail, frames)
    if isinstance(statement, cst.Try):
      return self.restructure_try(statement, tail, frames)
    if isinstance(statement, cst.TryStar):
      raise UnsupportedConstructError("Suspension inside 'except*'", source_of(statement))
    raise StructuralInvariantError("Statement was not desugared before rewriting", source_of(statement))

  @staticmethod
  def is_header_suspension(statement: cst.BaseStatement) -> bool:
    """
    True when the first suspension is evaluated before any nested block runs:
    in a simple statement, an `if` test, a `for` iterable, a `match` subject,
    or the header of a nested definition.
    """
    if isinstance(statement, (cst.SimpleStatementLine, cst.FunctionDef, cst.ClassDef)):
      return True
    chain = locate_first_await(statement)
    if chain is None or len(chain) < 2:
      return False
    child = chain[1]
    if isinstance(statement, cst.If):
      return child is statement.test
    if isinstance(statement, cst.For):
      return child is statement.iter
    if isinstance(statement, cst.Match):
      return child is statement.subject
    return False
