"""
Function Lowering Driver.

`FunctionLowerer` composes the rewriting mixins and runs the lowering of one
`async def` end to end:

1.  **Desugar**: validation, scope declarations, `super()` arguments and the
    statement forms the rewriter does not handle directly.
2.  **Analyze**: bindings of the desugared function.
3.  **Rewrite**: the block rewriting loop, from the outermost block inwards.
4.  **Fix scopes**: `nonlocal`/`global` in generated closures, function-level
    declarations of names that are no longer bound at the top level.
5.  **Verify**: no suspension point may survive.
6.  **Finalize**: decorate with `_async` unless the body provably never raises
    synchronously, in which case returns are wrapped with `_resolve`.
7.  **Hoist**: optional lifting of capture-free closures.

An async generator is first split (see `unawait.core.generators`); only its
entry goes through the steps above.
"""

import builtins
from typing import AbstractSet, Callable, List, Mapping, Optional

import libcst as cst

from unawait.analysis.bindings import BindingContext, collect_scope, parameter_names
from unawait.analysis.reachability import always_exits
from unawait.analysis.throws import SyncThrowAnalyzer
from unawait.core.base import BaseLowerer
from unawait.core.builders import assign, block, call, declare, line, return_, split_docstring, statement_list
from unawait.core.context import LoweringContext
from unawait.core.desugar import Desugarer
from unawait.core.exits import ExitsMixin
from unawait.core.flatten import FlattenMixin
from unawait.core.generators import is_async_generator, split_generator
from unawait.core.hoisting import ClosureHoister
from unawait.core.restructure import RestructureMixin
from unawait.core.scopes import ScopeFixer
from unawait.errors import StructuralInvariantError
from unawait.utils.node_source import source_of

Statements = List[cst.BaseStatement]

_BUILTINS = frozenset(dir(builtins))

# helpers that already return a Promise unless called with `direct` (argument position)
_PROMISE_RETURNING = {"_await": 2, "_await_ignored": 1, "_call": 2, "_call_ignored": 1}


def _code(node: cst.CSTNode) -> str:
  return cst.Module(body=[]).code_for_node(node)


class _ResidualFinder(cst.CSTVisitor):
  """Finds suspension points of the function itself (nested async defs are separate jobs)."""

  def __init__(self) -> None:
    self.found: Optional[cst.CSTNode] = None

  def _record(self, node: cst.CSTNode) -> None:
    if self.found is None:
      self.found = node

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    return node.asynchronous is None

  def visit_Await(self, node: cst.Await) -> None:
    self._record(node)

  def visit_For(self, node: cst.For) -> None:
    if node.asynchronous is not None:
      self._record(node)

  def visit_With(self, node: cst.With) -> None:
    if node.asynchronous is not None:
      self._record(node)

  def visit_CompFor(self, node: cst.CompFor) -> None:
    if node.asynchronous is not None:
      self._record(node)


class _ReturnWrapper(cst.CSTTransformer):
  """
  Wraps the function's own returns with `_resolve`.

  The helper is only referenced once a return actually needs it.
  """

  def __init__(self, resolve: Callable[[], str], helpers: Mapping[str, str]) -> None:
    self.resolve = resolve
    self.helpers = helpers

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    return False

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    return False

  def visit_Lambda(self, node: cst.Lambda) -> bool:
    return False

  def _returns_promise(self, value: cst.BaseExpression) -> bool:
    if not isinstance(value, cst.Call) or not isinstance(value.func, cst.Name):
      return False
    helper = self.helpers.get(value.func.value)
    if helper not in _PROMISE_RETURNING:
      return False
    return len(value.args) <= _PROMISE_RETURNING[helper]

  def leave_Return(self, original_node: cst.Return, updated_node: cst.Return) -> cst.Return:
    value = updated_node.value
    if value is not None and self._returns_promise(value):
      return updated_node
    args = [cst.Arg(value)] if value is not None else []
    return updated_node.with_changes(
      value=cst.Call(func=cst.Name(self.resolve()), args=args),
      whitespace_after_return=cst.SimpleWhitespace(" "),
    )


class FunctionLowerer(RestructureMixin, FlattenMixin, ExitsMixin, BaseLowerer):
  """
  Lowers one `async def` into a plain function returning a deferred value.

  Inherits the flattener, the restructurer and the exit normalizer; the
  shared state and the block rewriting loop come from `BaseLowerer`.
  """

  def __init__(
    self,
    context: LoweringContext,
    function: cst.FunctionDef,
    enclosing: AbstractSet[str] = frozenset(),
    method: bool = False,
    qualname: Optional[str] = None,
  ) -> None:
    super().__init__(context, function, enclosing, method)
    self.qualname = qualname or function.name.value

  def lower(self) -> cst.FunctionDef:
    """
    Runs the whole pipeline on the function.

    Returns:
        cst.FunctionDef: The synchronous function.

    Raises:
        UnsupportedConstructError: If the function uses a construct that
            cannot be lowered.
        StructuralInvariantError: If a suspension point survived rewriting.
    """
    original = self.function
    self.tracer.start_phase(f"Lowering {self.qualname}", "Rewriting an async function in continuation style")
    try:
      if is_async_generator(original):
        lowered = self._lower_generator(original)
      else:
        lowered = self._lower(original)
        if self.config.hoist:
          lowered = ClosureHoister(self.context, self.closures, self.enclosing).run(lowered)
      self.tracer.log_mutation("Function", _code(original), _code(lowered))
      self.context.lowered.append(self.qualname)
      return lowered
    finally:
      self.tracer.end_phase()

  def lower_nested(self, definition: cst.FunctionDef) -> cst.FunctionDef:
    """Lowers an `async def` synthesized inside this function (comprehensions)."""
    enclosing = frozenset(set(self.enclosing) | collect_scope(self.function).bound)
    qualname = f"{self.qualname}.<{definition.name.value}>"
    return FunctionLowerer(self.context, definition, enclosing, qualname=qualname).lower()

  def _lower_generator(self, original: cst.FunctionDef) -> cst.FunctionDef:
    generator = self.names.fresh("generator")
    entry_name = self.names.fresh("generator_body")
    docstring, entry = split_generator(original, generator, entry_name, self.method)
    enclosing = frozenset(set(self.enclosing) | set(parameter_names(original.params)))
    entry = FunctionLowerer(self.context, entry, enclosing, qualname=f"{self.qualname}.<generator>").lower()
    self.tracer.log_restructure("async generator", "_AsyncGenerator")
    body = [*docstring, entry, return_(call(self.helper("_AsyncGenerator"), entry_name))]
    suite = original.body
    suite = suite.with_changes(body=body) if isinstance(suite, cst.IndentedBlock) else block(body)
    return original.with_changes(body=suite, asynchronous=None)

  def _lower(self, original: cst.FunctionDef) -> cst.FunctionDef:
    original_scope = collect_scope(original)
    desugarer = Desugarer(self)
    self.function = desugarer.run()

    scope = collect_scope(self.function)
    scope.globals.update(desugarer.globals)
    scope.nonlocals.update(desugarer.nonlocals)
    self.temporaries |= (scope.bound - original_scope.bound) & self.names.generated
    self.bindings = BindingContext(scope, self.context.module_scope, self.enclosing, self.names.generated)

    docstring, body = split_docstring(statement_list(self.function.body))
    statements = self.rewrite(body, [])

    globals_ = set(desugarer.globals)
    nonlocals = set(desugarer.nonlocals)
    locals_ = (original_scope.bound | scope.bound | self.temporaries) - globals_ - nonlocals
    fixer = ScopeFixer(self.closures, locals_, globals_, nonlocals, self.temporaries)
    statements = fixer.fix(statements)

    head = desugarer.declarations()
    head += [declare(name) for name in sorted(fixer.requested - self._bound_by(statements))]
    if self.exit_flag is not None:
      head.append(assign(self.exit_flag, cst.Name("False")))
    statements = head + statements

    finder = _ResidualFinder()
    for statement in statements:
      statement.visit(finder)
    if finder.found is not None:
      raise StructuralInvariantError("Suspension point left after rewriting", source_of(finder.found))

    decorators = list(self.function.decorators)
    safe = ((set(self.context.module_scope.assigned) | _BUILTINS) - locals_) | self.names.generated
    safe |= set(parameter_names(original.params))
    analyzer = SyncThrowAnalyzer(self.context.helpers.locals, safe, self.names.flags)
    if analyzer.can_throw(statements):
      decorators.append(cst.Decorator(decorator=self.helper("_async")))
    else:
      statements = self._resolve_returns(statements)

    suite = self.function.body
    body = [*docstring, *statements]
    if isinstance(suite, cst.IndentedBlock):
      suite = suite.with_changes(body=body)
    else:
      suite = block(body)
    return self.function.with_changes(body=suite, asynchronous=None, decorators=decorators)

  def _bound_by(self, statements: Statements) -> set:
    candidate = self.function.with_changes(body=block(statements or [line(cst.Pass())]))
    return collect_scope(candidate).bound

  def _resolve_returns(self, statements: Statements) -> Statements:
    def resolve() -> str:
      return self.helper("_resolve").value

    wrapper = _ReturnWrapper(resolve, dict(self.context.helpers.locals))
    wrapped = [statement.visit(wrapper) for statement in statements]
    if not always_exits(wrapped):
      wrapped.append(return_(cst.Call(func=cst.Name(resolve()))))
    return wrapped
