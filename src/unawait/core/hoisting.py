"""
Closure Hoisting Pass.

Lifts synthesized closures that capture nothing from the lowered function to
module level, so they are created once instead of on every call. A closure
qualifies when:

1.  It (and every scope nested in it) declares no `nonlocal` or `global`.
2.  None of its free names is bound by the lowered function, by any scope
    nested in it, or by an enclosing function. Closures lifted earlier count
    as module names.
3.  It does not rely on the implicit `__class__` cell.

Closures are visited innermost first, so a continuation lifted out of a
branch can let the branch itself qualify. Structurally equal closures are
emitted once (see `LoweringContext.lift`) and references are renamed to the
surviving definition.
"""

from typing import AbstractSet, Dict, Set, Union

import libcst as cst

from unawait.analysis.bindings import ScopeInfo, collect_scope
from unawait.core.context import LoweringContext


def _bound_everywhere(info: ScopeInfo) -> Set[str]:
  names = set(info.bound)
  for child in info.children:
    names |= _bound_everywhere(child)
  return names


class _Renamer(cst.CSTTransformer):
  """Renames references to deduplicated closures."""

  def __init__(self, mapping: Dict[str, str]) -> None:
    self.mapping = mapping

  def leave_Attribute(self, original_node: cst.Attribute, updated_node: cst.Attribute) -> cst.Attribute:
    return updated_node.with_changes(attr=original_node.attr)

  def leave_Arg(self, original_node: cst.Arg, updated_node: cst.Arg) -> cst.Arg:
    return updated_node.with_changes(keyword=original_node.keyword)

  def leave_Name(self, original_node: cst.Name, updated_node: cst.Name) -> cst.Name:
    if original_node.value in self.mapping:
      return updated_node.with_changes(value=self.mapping[original_node.value])
    return updated_node


class ClosureHoister(cst.CSTTransformer):
  """
  Moves capture-free closures of one function into the module-level queue.

  Attributes:
      context: Module-wide state; receives the lifted closures.
      closures: Names of the closures synthesized for the function.
      enclosing: Names bound by enclosing function scopes.
      renamed: Original closure name -> module-level name.
  """

  def __init__(self, context: LoweringContext, closures: AbstractSet[str], enclosing: AbstractSet[str]) -> None:
    self.context = context
    self.closures = closures
    self.enclosing = enclosing
    self.renamed: Dict[str, str] = {}
    self._blocked: Set[str] = set()

  def run(self, function: cst.FunctionDef) -> cst.FunctionDef:
    self._blocked = _bound_everywhere(collect_scope(function)) | set(self.enclosing)
    body = function.body.visit(self)
    hoisted = function.with_changes(body=body)
    if self.renamed:
      hoisted = hoisted.with_changes(body=hoisted.body.visit(_Renamer(self.renamed)))
      lifted = ", ".join(sorted(set(self.renamed.values())))
      self.context.tracer.log_mutation("Hoisting", ", ".join(sorted(self.renamed)), lifted)
    return hoisted

  def leave_FunctionDef(
    self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef
  ) -> Union[cst.FunctionDef, cst.RemovalSentinel]:
    name = original_node.name.value
    if name not in self.closures:
      return updated_node
    candidate = updated_node.visit(_Renamer(self.renamed)) if self.renamed else updated_node
    if not self._liftable(candidate):
      return updated_node
    self.renamed[name] = self.context.lift(candidate)
    return cst.RemoveFromParent()

  def _liftable(self, closure: cst.FunctionDef) -> bool:
    info = collect_scope(closure)
    if info.nonlocals or info.globals or info.descendant_nonlocals() or info.descendant_globals():
      return False
    free = info.free_names()
    if "__class__" in free:
      return False
    return not (free & (self._blocked - set(self.renamed.values())))
