"""
Runtime Helper References.

The `HelperRegistry` hands out local names for runtime helpers while a module
is being lowered and, once lowering is done, emits what makes those names
resolve:

* **Import mode** (default): a single
  `from unawait.runtime.helpers import _await, _for as _for2` statement.
* **Inline mode**: the helper definitions themselves, copied from
  `unawait.runtime.helpers` together with every private definition they
  depend on and the imports of that module.

Local names never clash with identifiers of the module: a helper whose name
is taken is aliased with a numbered variant.
"""

import inspect
from typing import Dict, Iterable, List, Set

import libcst as cst

from unawait.analysis.bindings import name_occurrences, target_names
from unawait.config import LoweringConfig
from unawait.core.names import NameGenerator
from unawait.core.tracer import TraceLogger
from unawait.runtime import helpers as runtime_helpers

HELPER_NAMES = (
  "_async",
  "_await",
  "_await_ignored",
  "_continue",
  "_continue_ignored",
  "_call",
  "_call_ignored",
  "_invoke",
  "_invoke_ignored",
  "_catch",
  "_finally",
  "_finally_rethrows",
  "_rethrow",
  "_for",
  "_do",
  "_for_to",
  "_for_values",
  "_for_in",
  "_for_own",
  "_for_of",
  "_for_await_of",
  "_switch",
  "_empty",
  "_resolve",
  "_AsyncGenerator",
)


def _defined_names(statement: cst.CSTNode) -> List[str]:
  if isinstance(statement, (cst.FunctionDef, cst.ClassDef)):
    return [statement.name.value]
  if isinstance(statement, cst.SimpleStatementLine):
    names: List[str] = []
    for small in statement.body:
      if isinstance(small, cst.Assign):
        for target in small.targets:
          names.extend(target_names(target.target))
      elif isinstance(small, (cst.Import, cst.ImportFrom)) and not isinstance(small.names, cst.ImportStar):
        for alias in small.names:
          names.append(_alias_binding(alias))
    return names
  return []


def _alias_binding(alias: cst.ImportAlias) -> str:
  if alias.asname is not None:
    return alias.asname.name.value
  root = alias.name
  while isinstance(root, cst.Attribute):
    root = root.value
  return root.value


def _is_import(statement: cst.CSTNode) -> bool:
  return isinstance(statement, cst.SimpleStatementLine) and any(
    isinstance(small, (cst.Import, cst.ImportFrom)) for small in statement.body
  )


class _Renamer(cst.CSTTransformer):
  """Renames top-level definitions of the copied helper module."""

  def __init__(self, mapping: Dict[str, str]) -> None:
    self.mapping = mapping
    self._protected: Set[int] = set()

  def visit_Attribute(self, node: cst.Attribute) -> None:
    self._protected.add(id(node.attr))

  def visit_Arg(self, node: cst.Arg) -> None:
    if node.keyword is not None:
      self._protected.add(id(node.keyword))

  def visit_ImportAlias(self, node: cst.ImportAlias) -> bool:
    return False

  def leave_ImportAlias(self, original_node: cst.ImportAlias, updated_node: cst.ImportAlias) -> cst.ImportAlias:
    bound = _alias_binding(original_node)
    renamed = self.mapping.get(bound, bound)
    if renamed == bound or original_node.asname is not None:
      return updated_node
    return updated_node.with_changes(asname=cst.AsName(name=cst.Name(renamed)))

  def visit_ImportFrom(self, node: cst.ImportFrom) -> None:
    if node.module is not None:
      for name in _names_in(node.module):
        self._protected.add(id(name))

  def leave_Name(self, original_node: cst.Name, updated_node: cst.Name) -> cst.Name:
    if id(original_node) in self._protected:
      return updated_node
    renamed = self.mapping.get(original_node.value)
    return updated_node.with_changes(value=renamed) if renamed else updated_node


def _names_in(node: cst.CSTNode) -> List[cst.Name]:
  if isinstance(node, cst.Name):
    return [node]
  if isinstance(node, cst.Attribute):
    return [*_names_in(node.value), node.attr]
  return []


def _spaced(statement: cst.BaseStatement) -> cst.BaseStatement:
  """Ensures two blank lines separate `statement` from the helpers above it."""
  leading = list(statement.leading_lines)
  blanks = 0
  for line in leading:
    if line.comment is not None:
      break
    blanks += 1
  if blanks >= 2:
    return statement
  padding = [cst.EmptyLine() for _ in range(2 - blanks)]
  return statement.with_changes(leading_lines=padding + leading)


def insertion_index(module: cst.Module) -> int:
  """Index after the module docstring and `from __future__` imports."""
  index = 0
  body = module.body
  if body and isinstance(body[0], cst.SimpleStatementLine):
    first = body[0].body[0]
    if isinstance(first, cst.Expr) and isinstance(first.value, (cst.SimpleString, cst.ConcatenatedString)):
      index = 1
  while index < len(body):
    statement = body[index]
    if not isinstance(statement, cst.SimpleStatementLine):
      break
    small = statement.body[0]
    if not (isinstance(small, cst.ImportFrom) and isinstance(small.module, cst.Name) and small.module.value == "__future__"):
      break
    index += 1
  return index


class HelperRegistry:
  """
  Per-module registry of referenced runtime helpers.

  Attributes:
      _aliases (Dict[str, str]): Canonical helper name -> local name.
  """

  def __init__(self, names: NameGenerator, config: LoweringConfig, tracer: TraceLogger) -> None:
    self.names = names
    self.config = config
    self.tracer = tracer
    self._aliases: Dict[str, str] = {}

  def reference(self, helper: str) -> cst.Name:
    """
    Returns a name node resolving to `helper` in the output module.

    Args:
        helper: Canonical helper name, e.g. `_await`.
    """
    if helper not in HELPER_NAMES:
      raise KeyError(f"Unknown runtime helper: {helper}")
    if helper not in self._aliases:
      local = self.names.exact(helper)
      self._aliases[helper] = local
      self.tracer.log_helper(helper, local)
    return cst.Name(self._aliases[helper])

  def local_name(self, helper: str) -> str:
    return self.reference(helper).value

  @property
  def locals(self) -> Dict[str, str]:
    """Local name -> canonical helper name."""
    return {local: helper for helper, local in self._aliases.items()}

  @property
  def used(self) -> List[str]:
    return sorted(self._aliases)

  def emit(self, module: cst.Module) -> cst.Module:
    """
    Inserts the import (or inline definitions) of every referenced helper.

    Args:
        module: The lowered module.

    Returns:
        cst.Module: The module with helper references resolved.
    """
    if not self._aliases:
      return module
    if self.config.inline_helpers:
      statements = self._inline_statements()
    else:
      statements = [self._import_statement()]
    index = insertion_index(module)
    body = list(module.body)
    rest = body[index:]
    if rest:
      rest[0] = _spaced(rest[0])
    return module.with_changes(body=body[:index] + statements + rest)

  def _import_statement(self) -> cst.SimpleStatementLine:
    aliases = []
    for helper in sorted(self._aliases):
      local = self._aliases[helper]
      asname = cst.AsName(name=cst.Name(local)) if local != helper else None
      aliases.append(cst.ImportAlias(name=cst.Name(helper), asname=asname))
    module_path = cst.parse_expression(self.config.helpers_module)
    return cst.SimpleStatementLine(body=[cst.ImportFrom(module=module_path, names=aliases)])

  def _inline_statements(self) -> List[cst.BaseStatement]:
    source = cst.parse_module(inspect.getsource(runtime_helpers))
    definitions: Dict[str, cst.CSTNode] = {}
    imports: List[cst.BaseStatement] = []
    for statement in source.body:
      if _is_import(statement):
        imports.append(statement)
        continue
      for name in _defined_names(statement):
        definitions[name] = statement

    needed = self._dependency_closure(definitions, self._aliases)
    mapping: Dict[str, str] = dict(self._aliases)
    for name in needed:
      if name not in mapping:
        mapping[name] = self.names.exact(name)
    for statement in imports:
      for name in _defined_names(statement):
        mapping[name] = self.names.exact(name)

    renamer = _Renamer(mapping)
    copied = [statement.visit(renamer) for statement in imports]
    for statement in source.body:
      if not _is_import(statement) and any(name in needed for name in _defined_names(statement)):
        copied.append(statement.visit(renamer))
    return copied

  @staticmethod
  def _dependency_closure(definitions: Dict[str, cst.CSTNode], roots: Iterable[str]) -> Set[str]:
    needed: Set[str] = set()
    pending = list(roots)
    while pending:
      name = pending.pop()
      if name in needed or name not in definitions:
        continue
      needed.add(name)
      for referenced in name_occurrences(definitions[name]):
        if referenced in definitions and referenced not in needed:
          pending.append(referenced)
    return needed
