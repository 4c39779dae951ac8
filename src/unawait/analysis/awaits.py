"""
Suspension Point Locator.

Finds `await` expressions, `async for` and `async with` statements (and
asynchronous comprehensions) inside the scope of an async function.

Nested `def`, `class` and `lambda` bodies belong to another scope and are
skipped, but the parts of them evaluated in the enclosing scope (decorators,
default values, base classes) are searched.

`locate_first_await` follows Python's evaluation order, which differs from
document order in a few places:

* `target = value`: the value is evaluated before the targets.
* `target += value`: the target is loaded before the value.
* `body if test else orelse`: the test is evaluated first.
"""

from typing import Iterator, List, Optional, Sequence, Union

import libcst as cst

NodeOrStatements = Union[cst.CSTNode, Sequence[cst.CSTNode]]

_DYNAMIC_CALLS = frozenset({"eval", "exec"})
_DYNAMIC_SCOPE_CALLS = frozenset({"locals", "vars"})


def scope_children(node: cst.CSTNode) -> List[cst.CSTNode]:
  """
  Children of `node` evaluated in the same scope, in evaluation order.

  Args:
      node: Any CST node. For function and class definitions only the
          header parts evaluated at definition time are returned.

  Returns:
      List[cst.CSTNode]: Child nodes.
  """
  if isinstance(node, cst.FunctionDef):
    return [*node.decorators, node.params]
  if isinstance(node, cst.ClassDef):
    return [*node.decorators, *node.bases, *node.keywords]
  if isinstance(node, cst.Lambda):
    return [node.params]
  if isinstance(node, cst.Param):
    return [node.default] if node.default is not None else []
  if isinstance(node, cst.Assign):
    return [node.value, *node.targets]
  if isinstance(node, cst.AnnAssign):
    return [node.value, node.target] if node.value is not None else [node.target]
  if isinstance(node, cst.AugAssign):
    return [node.target, node.value]
  if isinstance(node, cst.IfExp):
    return [node.test, node.body, node.orelse]
  return list(node.children)


def walk_scope(node: NodeOrStatements) -> Iterator[cst.CSTNode]:
  """Yields `node` and every descendant in the same scope, pre-order."""
  stack: List[cst.CSTNode] = list(reversed(node)) if isinstance(node, (list, tuple)) else [node]
  while stack:
    current = stack.pop()
    yield current
    stack.extend(reversed(scope_children(current)))


def is_suspension(node: cst.CSTNode) -> bool:
  """True for nodes that suspend the enclosing coroutine."""
  if isinstance(node, cst.Await):
    return True
  if isinstance(node, (cst.For, cst.With, cst.CompFor)):
    return node.asynchronous is not None
  return False


def contains_await(node: NodeOrStatements) -> bool:
  """
  Checks a node (or a statement list) for suspension points in its scope.

  Args:
      node: A node or a sequence of statements.

  Returns:
      bool: True if an await, async for, async with or async comprehension
      clause is found.
  """
  return any(is_suspension(n) for n in walk_scope(node))


def locate_first_await(node: cst.CSTNode) -> Optional[List[cst.CSTNode]]:
  """
  Finds the first `await` evaluated when running `node`.

  Args:
      node: Statement or expression to search.

  Returns:
      The chain of nodes from `node` down to the `cst.Await`, or None.
  """
  if isinstance(node, cst.Await):
    inner = locate_first_await(node.expression)
    return [node] if inner is None else [node, *inner]
  for child in scope_children(node):
    chain = locate_first_await(child)
    if chain is not None:
      return [node, *chain]
  return None


def contains_yield(node: NodeOrStatements) -> bool:
  return any(isinstance(n, cst.Yield) for n in walk_scope(node))


def find_dynamic_evaluation(node: NodeOrStatements) -> Optional[cst.Call]:
  """
  Finds calls whose behavior depends on the local scope layout.

  `eval`/`exec` and argument-less `locals()`/`vars()` observe local variables
  that lowering moves into closures.

  Returns:
      The offending call, or None.
  """
  for n in walk_scope(node):
    if not isinstance(n, cst.Call) or not isinstance(n.func, cst.Name):
      continue
    name = n.func.value
    if name in _DYNAMIC_CALLS:
      return n
    if name in _DYNAMIC_SCOPE_CALLS and not n.args:
      return n
  return None
