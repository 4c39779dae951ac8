"""
Closure Scope Fixing.

After restructuring, code that used to assign function locals runs inside
synthesized closures. Without declarations those assignments would create
closure locals instead. `ScopeFixer` walks the rewritten body and:

1.  Adds `nonlocal` to every generated closure for the function locals it
    assigns, and `global` for names the function declared global.
2.  Leaves generated temporaries local to a closure when every occurrence of
    them lies inside that closure.
3.  Collects the names such declarations require the function itself to
    bind, so the driver can declare them (`name: object`) when no statement
    of the rewritten function binds them anymore.

User-written nested functions, classes and lambdas are opaque, except that
their own `nonlocal` declarations must still find a binding in the function.
"""

from typing import AbstractSet, Counter, List, Set

import libcst as cst

from unawait.analysis.bindings import collect_scope, name_occurrences
from unawait.core.builders import global_, nonlocal_

Statements = List[cst.BaseStatement]


class ScopeFixer(cst.CSTTransformer):
  """
  Inserts scope declarations into generated closures.

  Attributes:
      closures: Names of the generated closures.
      locals: Names local to the lowered function (original and generated).
      globals: Names declared `global` by the function.
      nonlocals: Names declared `nonlocal` by the function.
      temporaries: Generated variables, candidates for closure-local storage.
      requested: Function locals referenced by `nonlocal` declarations.
  """

  def __init__(
    self,
    closures: AbstractSet[str],
    locals_: AbstractSet[str],
    globals_: AbstractSet[str],
    nonlocals: AbstractSet[str],
    temporaries: AbstractSet[str],
  ) -> None:
    self.closures = closures
    self.locals = locals_
    self.globals = globals_
    self.nonlocals = nonlocals
    self.temporaries = temporaries
    self.requested: Set[str] = set()
    self._occurrences: Counter = Counter()

  def fix(self, statements: Statements) -> Statements:
    self._occurrences = name_occurrences(list(statements))
    return [statement.visit(self) for statement in statements]

  def _request_descendants(self, node) -> None:
    info = collect_scope(node)
    self.requested |= (info.nonlocals | info.descendant_nonlocals()) & self.locals

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    if node.name.value in self.closures:
      return True
    self._request_descendants(node)
    return False

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    self._request_descendants(node)
    return False

  def visit_Lambda(self, node: cst.Lambda) -> bool:
    return False

  def leave_FunctionDef(self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef) -> cst.FunctionDef:
    if original_node.name.value not in self.closures:
      return updated_node
    info = collect_scope(original_node)
    inside = name_occurrences(original_node.body)
    assigned = sorted(set(info.assigned) - info.params - info.globals - info.nonlocals)

    declared_global = [name for name in assigned if name in self.globals]
    declared_nonlocal = []
    for name in assigned:
      if name in self.globals or not (name in self.locals or name in self.nonlocals):
        continue
      if name in self.temporaries and inside[name] == self._occurrences[name]:
        continue
      declared_nonlocal.append(name)
    self.requested |= {name for name in declared_nonlocal if name in self.locals}

    declarations: Statements = []
    if declared_global:
      declarations.append(global_(declared_global))
    if declared_nonlocal:
      declarations.append(nonlocal_(declared_nonlocal))
    if not declarations:
      return updated_node
    return updated_node.with_changes(body=updated_node.body.with_changes(body=[*declarations, *updated_node.body.body]))
