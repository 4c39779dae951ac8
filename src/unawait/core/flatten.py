"""
Expression Flattening Mixin.

Handles a statement whose first suspension point is evaluated as part of the
statement itself (an expression statement, an assignment, a `return`, the
test of an `if`, ...). The statement is split into:

1.  **Hoists**: assignments of every operand evaluated before the await,
    so that the await becomes the next thing to run.
2.  **The awaited expression**, optionally with a *direct* expression that
    is true when short-circuiting skips the suspension entirely
    (`a and await b` with a false `a`).
3.  **The rebuilt statement**, with the await replaced by the continuation
    parameter.

When short-circuiting would have to hoist code out of a conditionally
evaluated operand, the enclosing `and`/`or`/conditional/comparison is turned
into an `if` statement assigning a temporary instead, and the result is
rewritten again.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

import libcst as cst

from unawait.analysis.awaits import contains_await, locate_first_await
from unawait.analysis.reachability import always_exits
from unawait.core.builders import and_, assign, if_, if_exp, is_name, not_, or_, parenthesize, return_
from unawait.core.names import suggest_name
from unawait.errors import StructuralInvariantError
from unawait.utils.node_source import source_of

Statements = List[cst.BaseStatement]

# Operand positions: plain value, `*value` and `**value`, and a callee
_VALUE = "value"
_STAR = "star"
_DOUBLE_STAR = "double_star"
_CALLEE = "callee"

Part = Tuple[cst.BaseExpression, str]


@dataclass
class Suspension:
  """
  A statement split around its first suspension point.

  Attributes:
      pre: Hoisted assignments, run before the await.
      awaited: Expression whose value is awaited.
      direct: When truthy at runtime, the suspension is skipped.
      param: Name receiving the resolved value in the continuation.
      rest: Statements run after the await (the rebuilt statement).
  """

  pre: Statements
  awaited: cst.BaseExpression
  direct: Optional[cst.BaseExpression]
  param: str
  rest: Statements


@dataclass
class Replacement:
  """Equivalent statements to rewrite instead of the original one."""

  statements: Statements


@dataclass
class _State:
  awaited: cst.BaseExpression
  direct: Optional[cst.BaseExpression] = None
  hoists: Statements = field(default_factory=list)


class _ChildReplacer(cst.CSTTransformer):
  """Replaces nodes by identity of the original node."""

  def __init__(self, mapping: Dict[int, cst.CSTNode]) -> None:
    self.mapping = mapping

  def on_visit(self, node: cst.CSTNode) -> bool:
    return id(node) not in self.mapping

  def on_leave(self, original_node: cst.CSTNode, updated_node: cst.CSTNode) -> cst.CSTNode:
    return self.mapping.get(id(original_node), updated_node)


def _replace(node: cst.CSTNode, mapping: Dict[int, cst.CSTNode]) -> cst.CSTNode:
  if not mapping:
    return node
  return node.visit(_ChildReplacer(mapping))


def _arg_parts(arg: cst.Arg) -> List[Part]:
  if arg.star == "*":
    return [(arg.value, _STAR)]
  if arg.star == "**":
    return [(arg.value, _DOUBLE_STAR)]
  return [(arg.value, _VALUE)]


def _element_parts(element: cst.CSTNode) -> List[Part]:
  if isinstance(element, cst.StarredElement):
    return [(element.value, _STAR)]
  if isinstance(element, cst.StarredDictElement):
    return [(element.value, _DOUBLE_STAR)]
  if isinstance(element, cst.DictElement):
    return [(element.key, _VALUE), (element.value, _VALUE)]
  return [(element.value, _VALUE)]


def _slice_parts(node: cst.Slice, until: Optional[cst.CSTNode] = None) -> List[Part]:
  parts = []
  for part in (node.lower, node.upper, node.step):
    if part is None:
      continue
    if part is until:
      break
    parts.append((part, _VALUE))
  return parts


def _subscript_parts(element: cst.SubscriptElement) -> List[Part]:
  if isinstance(element.slice, cst.Index):
    return [(element.slice.value, _VALUE)]
  return _slice_parts(element.slice)


def _before(items: Sequence[cst.CSTNode], child: cst.CSTNode, parts_of) -> List[Part]:
  parts: List[Part] = []
  for item in items:
    if item is child:
      break
    parts.extend(parts_of(item))
  return parts


def evaluated_before(parent: cst.CSTNode, child: cst.CSTNode) -> List[Part]:
  """
  Operands of `parent` that Python evaluates before `child`, in order.

  Args:
      parent: Expression or statement containing `child`.
      child: Direct child of `parent` on the path to an await.

  Returns:
      List of (operand, position kind) pairs.
  """
  if isinstance(parent, cst.Call):
    if child is parent.func:
      return []
    return [(parent.func, _CALLEE), *_before(parent.args, child, _arg_parts)]
  if isinstance(parent, cst.BinaryOperation):
    return [(parent.left, _VALUE)] if child is parent.right else []
  if isinstance(parent, cst.Comparison):
    return [] if child is parent.left else [(parent.left, _VALUE)]
  if isinstance(parent, cst.Subscript):
    if child is parent.value:
      return []
    return [(parent.value, _VALUE), *_before(parent.slice, child, _subscript_parts)]
  if isinstance(parent, cst.Slice):
    return _slice_parts(parent, child)
  if isinstance(parent, (cst.List, cst.Tuple, cst.Set, cst.Dict)):
    return _before(parent.elements, child, _element_parts)
  if isinstance(parent, cst.DictElement):
    return [(parent.key, _VALUE)] if child is parent.value else []
  if isinstance(parent, cst.FormattedString):
    return _before(
      parent.parts,
      child,
      lambda part: [(part.expression, _VALUE)] if isinstance(part, cst.FormattedStringExpression) else [],
    )
  if isinstance(parent, cst.Assign):
    return [] if child is parent.value else [(parent.value, _VALUE)]
  if isinstance(parent, cst.AnnAssign):
    return [(parent.value, _VALUE)] if child is parent.target and parent.value is not None else []
  if isinstance(parent, cst.AugAssign):
    target = parent.target
    if child is not parent.value:
      return []
    if isinstance(target, cst.Attribute):
      return [(target.value, _VALUE)]
    if isinstance(target, cst.Subscript):
      return [(target.value, _VALUE), *[part for element in target.slice for part in _subscript_parts(element)]]
    return []
  if isinstance(parent, cst.Raise):
    return [(parent.exc, _VALUE)] if child is parent.cause and parent.exc is not None else []
  if isinstance(parent, (cst.FunctionDef, cst.ClassDef)):
    decorators = [(d.decorator, _VALUE) for d in parent.decorators]
    if any(d is child for d in parent.decorators):
      return _before(parent.decorators, child, lambda d: [(d.decorator, _VALUE)])
    if isinstance(parent, cst.ClassDef):
      return decorators + _before([*parent.bases, *parent.keywords], child, _arg_parts)
    return decorators
  if isinstance(parent, cst.Parameters):
    params = [*parent.posonly_params, *parent.params, *parent.kwonly_params]
    return _before(params, child, lambda p: [(p.default, _VALUE)] if p.default is not None else [])
  return []


def _conditional_kind(parent: cst.CSTNode, child: cst.CSTNode) -> Optional[str]:
  """Names the short-circuiting construct that conditionally evaluates `child`."""
  if isinstance(parent, cst.BooleanOperation) and child is parent.right:
    return "logical"
  if isinstance(parent, cst.IfExp) and child is not parent.test:
    return "conditional"
  if isinstance(parent, cst.Comparison) and any(c is child for c in parent.comparisons[1:]):
    return "comparison"
  return None


class FlattenMixin:
  """Splits statements around their first suspension point."""

  def suspend(self, statement: cst.BaseStatement, tail: Statements, frames: list) -> Statements:
    """
    Rewrites `statement` + `tail`, where `statement` suspends in its header.

    The statements after the await become the continuation. When the rebuilt
    statement always exits, the tail is unreachable: it is rewritten after
    the helper call so that its binding sites survive.
    """
    outcome = self.flatten(statement, tail)
    if isinstance(outcome, Replacement):
      return self.rewrite(outcome.statements + tail, frames)
    rest = outcome.rest
    dead: Statements = []
    if rest and tail and always_exits(rest):
      following, dead = rest, tail
    else:
      following = rest + tail
    body = self.rewrite(following, frames)
    defs, call = self.await_call(outcome, body)
    out = outcome.pre + defs + [return_(call)]
    if dead:
      out.extend(self.rewrite(dead, frames))
    return out

  def await_call(self, outcome: Suspension, body: Statements) -> Tuple[Statements, cst.Call]:
    """
    Builds the helper call awaiting `outcome.awaited` then running `body`.

    `await f()` on a stable name `f` passes `f` itself to `_call`, which
    also turns a synchronous exception of `f` into a rejection.
    """
    awaited = outcome.awaited
    callee = None
    if (
      outcome.direct is None
      and isinstance(awaited, cst.Call)
      and not awaited.args
      and isinstance(awaited.func, cst.Name)
      and self.bindings.is_stable(awaited.func)
    ):
      callee = awaited.func
    if not body:
      if callee is not None:
        return [], self.helper_call("_call_ignored", callee)
      return [], self.helper_call("_await_ignored", awaited, outcome.direct)
    defs, then = self.continuation(outcome.param, body)
    if callee is not None:
      return defs, self.helper_call("_call", callee, then)
    return defs, self.helper_call("_await", awaited, then, outcome.direct)

  def flatten(self, statement: cst.BaseStatement, tail: Statements) -> Union[Suspension, Replacement]:
    """
    Splits `statement` around its first await.

    Args:
        statement: Statement whose first suspension is in its header.
        tail: Statements following it in the same block.

    Returns:
        A `Suspension`, or a `Replacement` when a conditional expression had
        to be converted into statements first.
    """
    chain = locate_first_await(statement)
    if chain is None:
      raise StructuralInvariantError("No await to flatten", source_of(statement))
    node = chain[-1]
    self.tracer.log_suspension(source_of(statement), source_of(node))

    reused = self._reusable_binding(chain, tail)
    param = reused or self.temporary(suggest_name(node.expression))
    state = _State(awaited=node.expression)
    current: cst.CSTNode = cst.Name(param)

    for index in range(len(chain) - 2, -1, -1):
      parent, child = chain[index], chain[index + 1]
      kind = _conditional_kind(parent, child)
      if kind is None:
        current = self._hoist_operands(parent, child, current, state)
      elif state.hoists:
        return self._convert(chain, self._outermost_conditional(chain))
      elif kind == "logical":
        current = self._fold_logical(parent, current, state)
      elif kind == "conditional":
        current = self._fold_conditional(parent, child, current, state, child is node)
      else:
        current = self._fold_comparison(parent, child, current, state)

    if reused is not None:
      rest: Statements = []
    elif self._is_placeholder(current, param):
      rest = []
    else:
      rest = [current]
    return Suspension(pre=state.hoists, awaited=state.awaited, direct=state.direct, param=param, rest=rest)

  # --- Binding reuse ---

  def _reusable_binding(self, chain: List[cst.CSTNode], tail: Statements) -> Optional[str]:
    """`x` in `x = await e` when the await can bind `x` directly."""
    if len(chain) != 3 or not isinstance(chain[0], cst.SimpleStatementLine):
      return None
    small = chain[1]
    if not isinstance(small, cst.Assign) or len(small.targets) != 1 or small.value is not chain[2]:
      return None
    target = small.targets[0].target
    if not isinstance(target, cst.Name):
      return None
    name = target.value
    if self.bindings.function.assigned[name] != 1 or not self.bindings.is_plain_local(name):
      return None
    if not self.bindings.is_confined(name, tail, extra=1):
      return None
    return name

  @staticmethod
  def _is_placeholder(statement: cst.CSTNode, param: str) -> bool:
    if not isinstance(statement, cst.SimpleStatementLine) or len(statement.body) != 1:
      return False
    small = statement.body[0]
    return isinstance(small, cst.Expr) and is_name(small.value, param)

  # --- Hoisting ---

  def _is_hoist_free(self, expression: cst.BaseExpression) -> bool:
    return isinstance(expression, cst.Lambda) or self.bindings.is_stable(expression)

  def _is_stable_callee(self, expression: cst.BaseExpression) -> bool:
    root = expression
    while isinstance(root, cst.Attribute):
      root = root.value
    return isinstance(root, cst.Name) and self.bindings.is_stable(root)

  def _hoist_operands(self, parent: cst.CSTNode, child: cst.CSTNode, current: cst.CSTNode, state: _State) -> cst.CSTNode:
    mapping: Dict[int, cst.CSTNode] = {id(child): current}
    hoists: Statements = []
    for operand, position in evaluated_before(parent, child):
      if position == _CALLEE and self._is_stable_callee(operand):
        continue
      if position in (_VALUE, _CALLEE) and self._is_hoist_free(operand):
        continue
      name = self.temporary(suggest_name(operand, "value"))
      value = operand
      if position == _STAR:
        value = cst.Tuple(
          elements=[cst.StarredElement(operand, comma=cst.Comma())],
          lpar=[cst.LeftParen()],
          rpar=[cst.RightParen()],
        )
      elif position == _DOUBLE_STAR:
        value = cst.Dict(elements=[cst.StarredDictElement(operand)])
      hoists.append(assign(name, value))
      mapping[id(operand)] = cst.Name(name)
    state.hoists = hoists + state.hoists
    return _replace(parent, mapping)

  def _stable_or_hoist(self, expression: cst.BaseExpression, state: _State) -> cst.BaseExpression:
    if self._is_hoist_free(expression):
      return expression
    name = self.temporary(suggest_name(expression, "value"))
    state.hoists.append(assign(name, expression))
    return cst.Name(name)

  @staticmethod
  def _combine_direct(state: _State, skip: cst.BaseExpression) -> None:
    state.direct = skip if state.direct is None else or_([skip, state.direct])

  # --- Short-circuit folding ---

  def _fold_logical(self, parent: cst.BooleanOperation, current: cst.CSTNode, state: _State) -> cst.CSTNode:
    left = self._stable_or_hoist(parent.left, state)
    if isinstance(parent.operator, cst.And):
      state.awaited = and_(left.deep_clone(), state.awaited)
      self._combine_direct(state, not_(left.deep_clone()))
    else:
      state.awaited = or_([left.deep_clone(), state.awaited])
      self._combine_direct(state, left.deep_clone())
    return parent.with_changes(left=left, right=current)

  def _fold_conditional(
    self, parent: cst.IfExp, child: cst.CSTNode, current: cst.CSTNode, state: _State, bare: bool
  ) -> cst.CSTNode:
    other = parent.orelse if child is parent.body else parent.body
    if (
      bare
      and state.direct is None
      and isinstance(other, cst.Await)
      and not contains_await(other.expression)
    ):
      if child is parent.body:
        state.awaited = if_exp(parent.test, state.awaited, other.expression)
      else:
        state.awaited = if_exp(parent.test, other.expression, state.awaited)
      return current
    test = self._stable_or_hoist(parent.test, state)
    if child is parent.body:
      state.awaited = and_(test.deep_clone(), state.awaited)
      self._combine_direct(state, not_(test.deep_clone()))
      return parent.with_changes(test=test, body=current)
    state.awaited = or_([test.deep_clone(), state.awaited])
    self._combine_direct(state, test.deep_clone())
    return parent.with_changes(test=test, orelse=current)

  def _comparison_prefix(
    self, parent: cst.Comparison, position: int
  ) -> Tuple[cst.Comparison, cst.BaseExpression]:
    """
    The comparisons before `position`, and the operand they share with the
    comparison at `position`, captured by a walrus when it is not stable.
    """
    previous = parent.comparisons[position - 1]
    operand = previous.comparator
    targets = list(parent.comparisons[:position])
    if not self._is_hoist_free(operand):
      name = self.temporary(suggest_name(operand, "value"))
      walrus = cst.NamedExpr(
        target=cst.Name(name), value=operand, lpar=[cst.LeftParen()], rpar=[cst.RightParen()]
      )
      targets[-1] = previous.with_changes(comparator=walrus)
      operand = cst.Name(name)
    return cst.Comparison(left=parent.left, comparisons=targets), operand

  def _fold_comparison(
    self, parent: cst.Comparison, child: cst.ComparisonTarget, current: cst.CSTNode, state: _State
  ) -> cst.CSTNode:
    position = next(i for i, c in enumerate(parent.comparisons) if c is child)
    prefix, operand = self._comparison_prefix(parent, position)
    result = self.temporary("comparison")
    state.hoists.append(assign(result, prefix))
    state.awaited = and_(cst.Name(result), state.awaited)
    self._combine_direct(state, not_(cst.Name(result)))
    remaining = cst.Comparison(left=operand, comparisons=[current, *parent.comparisons[position + 1 :]])
    folded = and_(cst.Name(result), remaining)
    if parent.lpar:
      return folded.with_changes(lpar=parent.lpar, rpar=parent.rpar)
    return parenthesize(folded)

  # --- Conversion into statements ---

  @staticmethod
  def _outermost_conditional(chain: List[cst.CSTNode]) -> int:
    for index in range(len(chain) - 1):
      if _conditional_kind(chain[index], chain[index + 1]) is not None:
        return index
    raise StructuralInvariantError("No conditional expression to convert", source_of(chain[0]))

  def _convert(self, chain: List[cst.CSTNode], position: int) -> Replacement:
    """
    Replaces the conditional expression at `chain[position]` by a temporary
    assigned through an `if` statement, keeping short-circuit evaluation.
    """
    parent, child = chain[position], chain[position + 1]
    value = self.temporary("value")
    if isinstance(parent, cst.BooleanOperation):
      test = cst.Name(value) if isinstance(parent.operator, cst.And) else not_(cst.Name(value))
      converted = [assign(value, parent.left), if_(test, [assign(value, parent.right)])]
    elif isinstance(parent, cst.IfExp):
      converted = [if_(parent.test, [assign(value, parent.body)], [assign(value, parent.orelse)])]
    else:
      index = next(i for i, c in enumerate(parent.comparisons) if c is child)
      prefix, operand = self._comparison_prefix(parent, index)
      remaining = cst.Comparison(left=operand, comparisons=list(parent.comparisons[index:]))
      converted = [assign(value, prefix), if_(cst.Name(value), [assign(value, remaining)])]
    self.tracer.log_restructure(type(parent).__name__, "if")

    state = _State(awaited=cst.Name(value))
    current: cst.CSTNode = cst.Name(value)
    for index in range(position - 1, -1, -1):
      current = self._hoist_operands(chain[index], chain[index + 1], current, state)
    return Replacement(state.hoists + converted + [current])
