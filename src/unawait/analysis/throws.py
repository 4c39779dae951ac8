"""
Synchronous Exception Analysis.

A lowered function must never raise synchronously: callers expect a deferred
value. When the analysis below cannot prove that the rewritten body is free of
synchronous exceptions, the driver decorates the function with `_async`,
which converts them into rejections.

The analysis is deliberately conservative. It knows which closure arguments
each runtime helper calls synchronously without a guard (for example the
`recover` closure of `_catch`, but not its `body`), and otherwise only trusts
literals, known names, generated boolean flags and lambdas.
"""

from typing import AbstractSet, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import libcst as cst

from unawait.analysis.bindings import parameter_names
from unawait.analysis.reachability import always_exits

# helper -> (positions of closures called synchronously without a guard, always raises)
_HELPER_RULES: Dict[str, Tuple[Tuple[int, ...], bool]] = {
  "_await": ((), False),
  "_await_ignored": ((), False),
  "_continue": ((1,), False),
  "_continue_ignored": ((), False),
  "_call": ((), False),
  "_call_ignored": ((), False),
  "_invoke": ((0, 1), False),
  "_invoke_ignored": ((0,), False),
  "_catch": ((1,), False),
  "_finally": ((1,), False),
  "_for": ((0, 1, 2), False),
  "_do": ((0, 1), False),
  "_switch": ((), False),
  "_empty": ((), False),
  "_resolve": ((), False),
  "_finally_rethrows": ((), True),
  "_rethrow": ((), True),
  "_for_to": ((), True),
  "_for_values": ((), True),
  "_for_in": ((), True),
  "_for_own": ((), True),
  "_for_of": ((), True),
  "_for_await_of": ((), True),
}

# helper -> (position of the `direct` argument, closures called synchronously when it is set)
_DIRECT_RULES: Dict[str, Tuple[int, Tuple[int, ...]]] = {
  "_await": (2, (1,)),
  "_call": (2, (0, 1)),
  "_call_ignored": (1, (0,)),
}


def _closure_defs(statements: Sequence[cst.CSTNode]) -> Dict[str, cst.FunctionDef]:
  found: Dict[str, cst.FunctionDef] = {}
  for statement in statements:
    if isinstance(statement, cst.FunctionDef):
      found[statement.name.value] = statement
    elif isinstance(statement, cst.If):
      found.update(_closure_defs(statement.body.body))
      orelse = statement.orelse
      while orelse is not None:
        if isinstance(orelse, cst.If):
          found.update(_closure_defs(orelse.body.body))
          orelse = orelse.orelse
        else:
          found.update(_closure_defs(orelse.body.body))
          orelse = None
  return found


class SyncThrowAnalyzer:
  """
  Decides whether a rewritten function body may raise synchronously.

  Attributes:
      helpers: Local helper names mapped to canonical helper names.
      safe_names: Names that are always bound (parameters, module names,
          builtins, generated temporaries).
      flags: Generated boolean flags, safe to test for truthiness.
  """

  def __init__(self, helpers: Mapping[str, str], safe_names: AbstractSet[str], flags: AbstractSet[str]) -> None:
    self.helpers = helpers
    self.safe_names = set(safe_names)
    self.flags = set(flags)
    self._scopes: List[Dict[str, cst.FunctionDef]] = []
    self._visiting: Set[str] = set()

  def can_throw(self, statements: Sequence[cst.CSTNode]) -> bool:
    """
    Args:
        statements: The top-level statements of the rewritten function.

    Returns:
        bool: True unless the body provably never raises synchronously.
    """
    self._scopes.append(_closure_defs(statements))
    try:
      return self._block(statements)
    finally:
      self._scopes.pop()

  def _lookup(self, name: str) -> Optional[cst.FunctionDef]:
    for scope in reversed(self._scopes):
      if name in scope:
        return scope[name]
    return None

  def _block(self, statements: Sequence[cst.CSTNode]) -> bool:
    for statement in statements:
      if self._statement(statement):
        return True
      if always_exits(statement):
        return False
    return False

  def _statement(self, node: cst.CSTNode) -> bool:
    if isinstance(node, cst.SimpleStatementLine):
      return any(self._small(small) for small in node.body)
    if isinstance(node, cst.FunctionDef):
      return bool(node.decorators) or any(p.default is not None for p in node.params.params)
    if isinstance(node, cst.If):
      if not self._is_flag_test(node.test):
        return True
      if self._block(node.body.body):
        return True
      if isinstance(node.orelse, cst.If):
        return self._statement(node.orelse)
      if isinstance(node.orelse, cst.Else):
        return self._block(node.orelse.body.body)
      return False
    return True

  def _small(self, node: cst.BaseSmallStatement) -> bool:
    if isinstance(node, (cst.Pass, cst.Nonlocal, cst.Global)):
      return False
    if isinstance(node, cst.Return):
      return node.value is not None and self._expression(node.value)
    if isinstance(node, cst.Expr):
      return self._expression(node.value)
    if isinstance(node, cst.AnnAssign):
      return node.value is not None
    if isinstance(node, cst.Assign):
      if not all(isinstance(t.target, cst.Name) for t in node.targets):
        return True
      return self._expression(node.value)
    return True

  def _is_flag_test(self, test: cst.BaseExpression) -> bool:
    if isinstance(test, cst.Name):
      return test.value in self.flags
    if isinstance(test, cst.UnaryOperation) and isinstance(test.operator, cst.Not):
      return self._is_flag_test(test.expression)
    if isinstance(test, cst.BooleanOperation):
      return self._is_flag_test(test.left) and self._is_flag_test(test.right)
    return False

  def _expression(self, node: cst.BaseExpression) -> bool:
    if isinstance(node, cst.Name):
      return node.value not in self.safe_names and node.value not in self.flags
    if isinstance(node, (cst.Integer, cst.Float, cst.Imaginary, cst.SimpleString, cst.Ellipsis, cst.Lambda)):
      return False
    if isinstance(node, (cst.Tuple, cst.List, cst.Set)):
      return any(isinstance(e, cst.StarredElement) or self._expression(e.value) for e in node.elements)
    if isinstance(node, cst.IfExp):
      return not self._is_flag_test(node.test) or self._expression(node.body) or self._expression(node.orelse)
    if isinstance(node, (cst.UnaryOperation, cst.BooleanOperation)):
      return not self._is_flag_test(node)
    if isinstance(node, cst.Call):
      return self._call(node)
    return True

  def _call(self, node: cst.Call) -> bool:
    if not isinstance(node.func, cst.Name) or any(arg.keyword is not None or arg.star for arg in node.args):
      return True
    name = node.func.value
    closure = self._lookup(name)
    if closure is not None:
      return bool(node.args) or self._closure(closure)
    helper = self.helpers.get(name)
    if helper is None or helper not in _HELPER_RULES:
      return True
    synchronous, raises = _HELPER_RULES[helper]
    if raises:
      return True
    args = [arg.value for arg in node.args]
    if helper in _DIRECT_RULES:
      direct_at, when_direct = _DIRECT_RULES[helper]
      if len(args) > direct_at and not _is_false(args[direct_at]):
        synchronous = when_direct
    if helper == "_switch":
      return self._switch_cases(args)
    for position, value in enumerate(args):
      if position in synchronous:
        if self._callable(value):
          return True
      elif isinstance(value, cst.Lambda) or self._is_closure_name(value):
        continue
      elif self._expression(value):
        return True
    return False

  def _is_closure_name(self, value: cst.BaseExpression) -> bool:
    return isinstance(value, cst.Name) and self._lookup(value.value) is not None

  def _switch_cases(self, args: List[cst.BaseExpression]) -> bool:
    if len(args) != 2 or self._expression(args[0]) or not isinstance(args[1], cst.List):
      return True
    for element in args[1].elements:
      case = element.value
      if not isinstance(case, cst.Tuple):
        return True
      if any(self._callable(part.value) for part in case.elements):
        return True
    return False

  def _callable(self, value: cst.BaseExpression) -> bool:
    if isinstance(value, cst.Name):
      if value.value == "None":
        return False
      closure = self._lookup(value.value)
      if closure is None:
        return value.value not in self.helpers or self.helpers[value.value] != "_empty"
      return self._closure(closure)
    if isinstance(value, cst.Lambda):
      saved = set(self.safe_names)
      self.safe_names.update(parameter_names(value.params))
      try:
        return self._expression(value.body)
      finally:
        self.safe_names = saved
    return True

  def _closure(self, closure: cst.FunctionDef) -> bool:
    name = closure.name.value
    if name in self._visiting:
      return True
    self._visiting.add(name)
    saved = set(self.safe_names)
    self.safe_names.update(parameter_names(closure.params))
    self._scopes.append(_closure_defs(closure.body.body))
    try:
      return self._block(closure.body.body)
    finally:
      self._scopes.pop()
      self.safe_names = saved
      self._visiting.discard(name)


def _is_false(value: cst.BaseExpression) -> bool:
  return isinstance(value, cst.Name) and value.value in ("False", "None")
