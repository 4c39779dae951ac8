"""
Control Reachability Analysis.

Answers, for a statement or block, whether any / every execution path reaches
one of a set of target exits (`return`, `raise`, `break`, `continue`).

The restructurer uses it to decide:
1.  Whether the statements after a construct can run at all (an `if` whose
    branches all return does not need a continuation).
2.  Whether a loop body breaks (loop `else` handling, interrupt flags).
3.  Whether a `finally` clause always exits (`_finally` vs `_finally_rethrows`).
4.  Whether a lowered function needs a trailing `return`.

Rules:
* Statements after one that never completes normally are unreachable and do
  not contribute to `any`.
* `break`/`continue` only count as exits when they target a loop enclosing
  the analyzed node; inside a nested loop they only end the current block.
* Loops never make `all` true, except a `while` whose test is statically
  always true, with no `break`, and whose body reaches a target on all paths.
* A `finally` that always reaches a target dominates the `try`. Otherwise the
  body followed by `else`, and every handler, must reach a target.
* `match` needs an irrefutable unguarded case and every case reaching a target.
* Nested function and class definitions are opaque.

The analysis never mutates the tree.
"""

from dataclasses import dataclass
from typing import AbstractSet, Optional, Sequence, Union

import libcst as cst

from unawait.enums import ExitKind

NodeOrStatements = Union[cst.CSTNode, Sequence[cst.CSTNode]]

ALL_EXITS = frozenset(ExitKind)


@dataclass(frozen=True)
class Reachability:
  """
  Result of a reachability query.

  Attributes:
      any: Some path reaches a target exit.
      all: Every path reaches a target exit.
      falls_through: Some path completes normally (reaches the next statement).
  """

  any: bool = False
  all: bool = False
  falls_through: bool = True


_NOTHING = Reachability()


def _exit(kind: ExitKind, targets: AbstractSet[ExitKind]) -> Reachability:
  if kind in targets:
    return Reachability(any=True, all=True, falls_through=False)
  return Reachability(falls_through=False)


def _block(statements: Sequence[cst.CSTNode], targets: AbstractSet[ExitKind], depth: int) -> Reachability:
  reached = False
  for statement in statements:
    flow = _statement(statement, targets, depth)
    reached = reached or flow.any
    if flow.all:
      return Reachability(any=reached, all=True, falls_through=False)
    if not flow.falls_through:
      return Reachability(any=reached, all=False, falls_through=False)
  return Reachability(any=reached)


def _suite(suite: Optional[cst.CSTNode], targets: AbstractSet[ExitKind], depth: int) -> Reachability:
  if suite is None:
    return _NOTHING
  if isinstance(suite, (cst.Else, cst.Finally)):
    suite = suite.body
  return _block(suite.body, targets, depth)


def is_statically_true(test: cst.BaseExpression) -> bool:
  """
  True only for literals that are always truthy: `True`, non-zero numbers,
  non-empty strings and bytes.
  """
  if isinstance(test, cst.Name):
    return test.value == "True"
  if isinstance(test, (cst.Integer, cst.Float, cst.Imaginary, cst.SimpleString, cst.ConcatenatedString)):
    try:
      return bool(test.evaluated_value)
    except (ValueError, SyntaxError):
      return False
  return False


def is_irrefutable(pattern: cst.MatchPattern) -> bool:
  """True for `case _`, `case name` and or-patterns with such an alternative."""
  if isinstance(pattern, cst.MatchAs):
    return pattern.pattern is None or is_irrefutable(pattern.pattern)
  if isinstance(pattern, cst.MatchOr):
    return any(is_irrefutable(element.pattern) for element in pattern.patterns)
  return False


def _loop(node: Union[cst.While, cst.For], targets: AbstractSet[ExitKind], depth: int) -> Reachability:
  body = _suite(node.body, targets, depth + 1)
  breaks = _block(node.body.body, frozenset({ExitKind.BREAK}), 0).any
  infinite = isinstance(node, cst.While) and is_statically_true(node.test) and not breaks
  orelse = _suite(node.orelse, targets, depth) if not infinite else _NOTHING
  return Reachability(
    any=body.any or orelse.any,
    all=infinite and body.all,
    falls_through=not infinite,
  )


def _try(node: Union[cst.Try, cst.TryStar], targets: AbstractSet[ExitKind], depth: int) -> Reachability:
  statements = list(node.body.body)
  if node.orelse is not None:
    statements.extend(node.orelse.body.body)
  normal = _block(statements, targets, depth)
  handlers = [_suite(handler.body, targets, depth) for handler in node.handlers]
  final = _suite(node.finalbody, targets, depth) if node.finalbody is not None else None
  reached = normal.any or any(h.any for h in handlers) or (final is not None and final.any)

  if final is not None and final.all:
    return Reachability(any=reached, all=True, falls_through=False)
  if final is not None and not final.falls_through:
    return Reachability(any=reached, all=False, falls_through=False)
  return Reachability(
    any=reached,
    all=normal.all and all(h.all for h in handlers),
    falls_through=normal.falls_through or any(h.falls_through for h in handlers),
  )


def _match(node: cst.Match, targets: AbstractSet[ExitKind], depth: int) -> Reachability:
  cases = [_suite(case.body, targets, depth) for case in node.cases]
  exhaustive = any(is_irrefutable(case.pattern) and case.guard is None for case in node.cases)
  return Reachability(
    any=any(c.any for c in cases),
    all=exhaustive and all(c.all for c in cases),
    falls_through=not exhaustive or any(c.falls_through for c in cases),
  )


def _statement(node: cst.CSTNode, targets: AbstractSet[ExitKind], depth: int) -> Reachability:
  if isinstance(node, cst.SimpleStatementLine):
    return _block(node.body, targets, depth)
  if isinstance(node, (cst.IndentedBlock, cst.SimpleStatementSuite)):
    return _block(node.body, targets, depth)
  if isinstance(node, cst.Return):
    return _exit(ExitKind.RETURN, targets)
  if isinstance(node, cst.Raise):
    return _exit(ExitKind.RAISE, targets)
  if isinstance(node, (cst.Break, cst.Continue)):
    if depth > 0:
      return Reachability(falls_through=False)
    return _exit(ExitKind.BREAK if isinstance(node, cst.Break) else ExitKind.CONTINUE, targets)
  if isinstance(node, cst.If):
    body = _suite(node.body, targets, depth)
    if node.orelse is None:
      return Reachability(any=body.any, all=False, falls_through=True)
    orelse = _statement(node.orelse, targets, depth) if isinstance(node.orelse, cst.If) else _suite(node.orelse, targets, depth)
    return Reachability(
      any=body.any or orelse.any,
      all=body.all and orelse.all,
      falls_through=body.falls_through or orelse.falls_through,
    )
  if isinstance(node, (cst.While, cst.For)):
    return _loop(node, targets, depth)
  if isinstance(node, (cst.Try, cst.TryStar)):
    return _try(node, targets, depth)
  if isinstance(node, cst.With):
    return _suite(node.body, targets, depth)
  if isinstance(node, cst.Match):
    return _match(node, targets, depth)
  return _NOTHING


def paths_reach(node: NodeOrStatements, targets: AbstractSet[ExitKind]) -> Reachability:
  """
  Computes reachability of `targets` for a statement, block or statement list.

  Args:
      node: A statement, a suite, or a sequence of statements.
      targets: Exit kinds that count as reaching.

  Returns:
      Reachability: any/all flags plus whether the node can complete normally.
  """
  if isinstance(node, (list, tuple)):
    return _block(node, targets, 0)
  return _statement(node, targets, 0)


def paths_return(node: NodeOrStatements) -> Reachability:
  return paths_reach(node, frozenset({ExitKind.RETURN}))


def paths_return_or_raise(node: NodeOrStatements) -> Reachability:
  return paths_reach(node, frozenset({ExitKind.RETURN, ExitKind.RAISE}))


def paths_break(node: NodeOrStatements) -> Reachability:
  return paths_reach(node, frozenset({ExitKind.BREAK}))


def paths_exit(node: NodeOrStatements) -> Reachability:
  return paths_reach(node, ALL_EXITS)


def always_exits(node: NodeOrStatements) -> bool:
  """True when no path through `node` continues with the next statement."""
  return not paths_exit(node).falls_through
