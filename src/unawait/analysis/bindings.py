"""
Scope and Binding Analysis.

Builds a lightweight model of Python scopes for a function (or module):

* `ScopeInfo` records, for one scope, its parameters, the names bound in it
  (with the number of binding sites), its `global`/`nonlocal` declarations,
  the names it references, and its nested scopes (functions, lambdas,
  classes and comprehensions).
* `BindingContext` answers the questions the flattener asks about a function
  being lowered: is a name or expression stable across a suspension, and is
  a variable confined to a set of statements.

Binding sites follow the language reference: assignment and augmented
assignment targets, annotated names, `for` targets, `with ... as`,
`except ... as`, imports, `del`, walrus targets (which escape
comprehensions), `def`/`class` names and match captures.
"""

import builtins
from collections import Counter
from dataclasses import dataclass, field
from typing import AbstractSet, Iterable, List, Optional, Sequence, Set, Union

import libcst as cst

_BUILTINS = frozenset(dir(builtins))
_LITERAL_NAMES = frozenset({"True", "False", "None"})
_COMPREHENSIONS = (cst.ListComp, cst.SetComp, cst.DictComp, cst.GeneratorExp)

ScopeNode = Union[cst.Module, cst.FunctionDef, cst.Lambda, cst.ClassDef, cst.BaseComp]


def target_names(target: Optional[cst.CSTNode]) -> List[str]:
  """
  Names bound by an assignment target.

  Args:
      target: Target expression (`x`, `a, *b`, `obj.attr`, ...).

  Returns:
      List[str]: Bound names; attribute and subscript targets bind nothing.
  """
  if target is None:
    return []
  if isinstance(target, cst.Name):
    return [target.value]
  if isinstance(target, (cst.Tuple, cst.List)):
    names: List[str] = []
    for element in target.elements:
      names.extend(target_names(element.value))
    return names
  if isinstance(target, cst.StarredElement):
    return target_names(target.value)
  return []


def parameter_names(params: cst.Parameters) -> List[str]:
  names = [p.name.value for p in (*params.posonly_params, *params.params, *params.kwonly_params)]
  if isinstance(params.star_arg, cst.Param):
    names.append(params.star_arg.name.value)
  if params.star_kwarg is not None:
    names.append(params.star_kwarg.name.value)
  return names


@dataclass
class ScopeInfo:
  """
  Bindings of a single scope.

  Attributes:
      node: The scope-defining node.
      kind: 'module', 'function', 'class' or 'comprehension'.
      params: Parameter names.
      assigned: Binding sites per name (parameters excluded).
      globals: Names declared `global`.
      nonlocals: Names declared `nonlocal`.
      loads: Names referenced anywhere in the scope.
      escaping: Walrus targets of a comprehension, bound by the enclosing scope.
      children: Directly nested scopes.
  """

  node: cst.CSTNode
  kind: str
  params: Set[str] = field(default_factory=set)
  assigned: Counter = field(default_factory=Counter)
  globals: Set[str] = field(default_factory=set)
  nonlocals: Set[str] = field(default_factory=set)
  loads: Set[str] = field(default_factory=set)
  escaping: Set[str] = field(default_factory=set)
  children: List["ScopeInfo"] = field(default_factory=list)

  @property
  def bound(self) -> Set[str]:
    """Names that are local to this scope."""
    return (self.params | set(self.assigned)) - self.globals - self.nonlocals

  def free_names(self) -> Set[str]:
    """Names resolved outside this scope, including those of nested scopes."""
    bound = self.bound
    free = (self.loads - bound - self.globals) | self.nonlocals
    for child in self.children:
      child_free = child.free_names()
      if self.kind == "class":
        free |= child_free
      else:
        free |= child_free - bound
    return free

  def descendant_nonlocals(self) -> Set[str]:
    names: Set[str] = set()
    for child in self.children:
      names |= child.nonlocals | child.descendant_nonlocals()
    return names

  def descendant_globals(self) -> Set[str]:
    names: Set[str] = set()
    for child in self.children:
      names |= child.globals | child.descendant_globals()
    return names


class _ScopeCollector(cst.CSTVisitor):
  """Fills a `ScopeInfo` without descending into nested scopes."""

  def __init__(self, info: ScopeInfo) -> None:
    self.info = info
    self._skip: Set[int] = set()

  def _bind(self, names: Iterable[str]) -> None:
    for name in names:
      self.info.assigned[name] += 1

  def _visit_defaults(self, params: cst.Parameters) -> None:
    for param in (*params.posonly_params, *params.params, *params.kwonly_params):
      if param.default is not None:
        param.default.visit(self)

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    self._bind([node.name.value])
    for decorator in node.decorators:
      decorator.visit(self)
    self._visit_defaults(node.params)
    self.info.children.append(collect_scope(node))
    return False

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    self._bind([node.name.value])
    for part in (*node.decorators, *node.bases, *node.keywords):
      part.visit(self)
    self.info.children.append(collect_scope(node))
    return False

  def visit_Lambda(self, node: cst.Lambda) -> bool:
    self._visit_defaults(node.params)
    self.info.children.append(collect_scope(node))
    return False

  def _visit_comprehension(self, node: cst.BaseComp) -> bool:
    child = collect_scope(node)
    if self.info.kind == "comprehension":
      self.info.escaping |= child.escaping
    else:
      self._bind(child.escaping)
    self.info.children.append(child)
    return False

  def visit_ListComp(self, node: cst.ListComp) -> bool:
    return self._visit_comprehension(node)

  def visit_SetComp(self, node: cst.SetComp) -> bool:
    return self._visit_comprehension(node)

  def visit_DictComp(self, node: cst.DictComp) -> bool:
    return self._visit_comprehension(node)

  def visit_GeneratorExp(self, node: cst.GeneratorExp) -> bool:
    return self._visit_comprehension(node)

  def visit_CompFor(self, node: cst.CompFor) -> None:
    self._bind(target_names(node.target))

  def visit_Global(self, node: cst.Global) -> bool:
    self.info.globals.update(item.name.value for item in node.names)
    return False

  def visit_Nonlocal(self, node: cst.Nonlocal) -> bool:
    self.info.nonlocals.update(item.name.value for item in node.names)
    return False

  def visit_Import(self, node: cst.Import) -> bool:
    for alias in node.names:
      if alias.asname is not None:
        self._bind(target_names(alias.asname.name))
      else:
        root = alias.name
        while isinstance(root, cst.Attribute):
          root = root.value
        self._bind([root.value])
    return False

  def visit_ImportFrom(self, node: cst.ImportFrom) -> bool:
    if not isinstance(node.names, cst.ImportStar):
      for alias in node.names:
        bound = alias.asname.name if alias.asname is not None else alias.name
        self._bind(target_names(bound))
    return False

  def visit_AssignTarget(self, node: cst.AssignTarget) -> None:
    self._bind(target_names(node.target))

  def visit_AnnAssign(self, node: cst.AnnAssign) -> None:
    self._bind(target_names(node.target))

  def visit_AugAssign(self, node: cst.AugAssign) -> None:
    self._bind(target_names(node.target))

  def visit_For(self, node: cst.For) -> None:
    self._bind(target_names(node.target))

  def visit_WithItem(self, node: cst.WithItem) -> None:
    if node.asname is not None:
      self._bind(target_names(node.asname.name))

  def visit_ExceptHandler(self, node: cst.ExceptHandler) -> None:
    if node.name is not None:
      self._bind(target_names(node.name.name))

  def visit_ExceptStarHandler(self, node: cst.ExceptStarHandler) -> None:
    if node.name is not None:
      self._bind(target_names(node.name.name))

  def visit_Del(self, node: cst.Del) -> None:
    self._bind(target_names(node.target))

  def visit_NamedExpr(self, node: cst.NamedExpr) -> None:
    if self.info.kind == "comprehension":
      self.info.escaping.update(target_names(node.target))
    else:
      self._bind(target_names(node.target))

  def visit_MatchAs(self, node: cst.MatchAs) -> None:
    if node.name is not None:
      self._bind([node.name.value])

  def visit_MatchStar(self, node: cst.MatchStar) -> None:
    if node.name is not None:
      self._bind([node.name.value])

  def visit_MatchMapping(self, node: cst.MatchMapping) -> None:
    if node.rest is not None:
      self._bind([node.rest.value])

  def visit_Attribute(self, node: cst.Attribute) -> None:
    self._skip.add(id(node.attr))

  def visit_Arg(self, node: cst.Arg) -> None:
    if node.keyword is not None:
      self._skip.add(id(node.keyword))

  def visit_Name(self, node: cst.Name) -> None:
    if id(node) not in self._skip:
      self.info.loads.add(node.value)


def collect_scope(node: ScopeNode) -> ScopeInfo:
  """
  Analyzes the scope introduced by `node`.

  Args:
      node: Module, function, lambda, class or comprehension.

  Returns:
      ScopeInfo: Bindings of the scope and its nested scopes.
  """
  if isinstance(node, cst.Module):
    info = ScopeInfo(node, "module")
    parts: Sequence[cst.CSTNode] = node.body
  elif isinstance(node, (cst.FunctionDef, cst.Lambda)):
    info = ScopeInfo(node, "function", params=set(parameter_names(node.params)))
    parts = [node.body]
  elif isinstance(node, cst.ClassDef):
    info = ScopeInfo(node, "class")
    parts = [node.body]
  elif isinstance(node, cst.DictComp):
    info = ScopeInfo(node, "comprehension")
    parts = [node.key, node.value, node.for_in]
  else:
    info = ScopeInfo(node, "comprehension")
    parts = [node.elt, node.for_in]
  collector = _ScopeCollector(info)
  for part in parts:
    part.visit(collector)
  return info


class _NameCounter(cst.CSTVisitor):
  def __init__(self) -> None:
    self.counts: Counter = Counter()
    self._skip: Set[int] = set()

  def visit_Attribute(self, node: cst.Attribute) -> None:
    self._skip.add(id(node.attr))

  def visit_Arg(self, node: cst.Arg) -> None:
    if node.keyword is not None:
      self._skip.add(id(node.keyword))

  def visit_ImportFrom(self, node: cst.ImportFrom) -> None:
    if node.module is not None:
      for name in _names_in(node.module):
        self._skip.add(id(name))

  def visit_Name(self, node: cst.Name) -> None:
    if id(node) not in self._skip:
      self.counts[node.value] += 1


def _names_in(node: cst.CSTNode) -> List[cst.Name]:
  if isinstance(node, cst.Name):
    return [node]
  if isinstance(node, cst.Attribute):
    return [*_names_in(node.value), node.attr]
  return []


def name_occurrences(nodes: Union[cst.CSTNode, Sequence[cst.CSTNode]]) -> Counter:
  """
  Counts every occurrence of each identifier, nested scopes included.

  Attribute names and keyword argument names are not variable references
  and are not counted.
  """
  counter = _NameCounter()
  for node in nodes if isinstance(nodes, (list, tuple)) else [nodes]:
    node.visit(counter)
  return counter.counts


class BindingContext:
  """
  Binding queries for the function being lowered.

  Attributes:
      function: Scope of the function (after desugaring).
      module: Scope of the enclosing module.
      enclosing: Names bound by enclosing function scopes.
      generated: Names created by the lowering (temporaries, closures, helpers).
  """

  def __init__(
    self,
    function: ScopeInfo,
    module: ScopeInfo,
    enclosing: AbstractSet[str] = frozenset(),
    generated: Optional[AbstractSet[str]] = None,
  ) -> None:
    self.function = function
    self.module = module
    self.enclosing = enclosing
    self.generated = generated if generated is not None else set()
    self.occurrences = name_occurrences(function.node.body)
    self._rebound = function.descendant_nonlocals()
    self._captured: Set[str] = set()
    for child in function.children:
      self._captured |= child.free_names()
    self._module_globals = module.globals | module.descendant_globals()

  @property
  def locals(self) -> Set[str]:
    return self.function.bound

  def is_stable_name(self, name: str) -> bool:
    """
    True if no code can rebind `name` while the function is suspended.

    Locals qualify unless a nested function declares them `nonlocal`;
    module names qualify when bound once and never declared `global`;
    builtins qualify when not shadowed.
    """
    if name in _LITERAL_NAMES or name in self.generated:
      return True
    if name in self.function.nonlocals:
      return False
    if name in self.function.bound:
      return name not in self._rebound
    if name in self.enclosing:
      return False
    if name in self.module.assigned:
      return self.module.assigned[name] == 1 and name not in self._module_globals
    return name in _BUILTINS and name not in self._module_globals

  def is_stable(self, expression: cst.BaseExpression) -> bool:
    """True for literals and stable names, whose value cannot change across a suspension."""
    if isinstance(expression, cst.Name):
      return self.is_stable_name(expression.value)
    if isinstance(expression, (cst.Integer, cst.Float, cst.Imaginary, cst.SimpleString, cst.Ellipsis)):
      return True
    if isinstance(expression, cst.ConcatenatedString):
      return self.is_stable(expression.left) and self.is_stable(expression.right)
    if isinstance(expression, cst.UnaryOperation) and isinstance(expression.operator, (cst.Minus, cst.Plus)):
      return isinstance(expression.expression, (cst.Integer, cst.Float, cst.Imaginary))
    return False

  def is_confined(self, name: str, statements: Sequence[cst.CSTNode], extra: int = 0) -> bool:
    """
    True if every occurrence of `name` in the function lies in `statements`,
    apart from `extra` known occurrences elsewhere.
    """
    inside = name_occurrences(list(statements))[name]
    return self.occurrences[name] == inside + extra

  def is_plain_local(self, name: str) -> bool:
    """A local that is neither a parameter nor shared with nested functions."""
    return (
      name in self.function.bound
      and name not in self.function.params
      and name not in self._rebound
    )

  def is_captured(self, name: str) -> bool:
    """True if a nested function, lambda or comprehension refers to `name`."""
    return name in self._captured
