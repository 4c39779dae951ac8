"""
Desugaring Pass.

Runs before restructuring and rewrites an async function into a smaller
language that the restructurer handles:

1.  **Validation**: async generators, `except*` around awaits, asynchronous
    generator expressions and scope-dependent dynamic evaluation
    (`eval`, `exec`, `locals()`, `vars()`) are rejected.
2.  **Declarations**: `global`/`nonlocal` statements are collected so the
    driver can emit them once at the top of the function.
3.  **Statements**: `with`/`async with` follow PEP 343, `assert` becomes an
    `if __debug__` test, loop `else` uses a no-break flag, `try`/`else` a
    success flag, `a; b` lines are split and multi-target assignments with
    awaits in their targets go through a temporary.
4.  **Expressions**: comprehensions containing awaits become nested
    `async def` functions (lowered on their own) awaited in place, and
    zero-argument `super()` gets explicit arguments.

Only statements containing suspension points are desugared, apart from the
declaration and `super()` rewrites which apply to the whole function.
"""

from typing import List, Optional, Sequence, Tuple

import libcst as cst

from unawait.analysis.awaits import contains_await, find_dynamic_evaluation, walk_scope
from unawait.analysis.bindings import collect_scope
from unawait.analysis.reachability import paths_break
from unawait.core.builders import (
  assign,
  block,
  call,
  expr_statement,
  global_,
  if_,
  line,
  nonlocal_,
  not_,
  parenthesize,
  return_,
  statement_list,
)
from unawait.errors import UnsupportedConstructError
from unawait.utils.node_source import source_of

Statements = List[cst.BaseStatement]


def _with_statements(suite: cst.BaseSuite, statements: Statements) -> cst.BaseSuite:
  if isinstance(suite, cst.IndentedBlock):
    return suite.with_changes(body=statements or [line(cst.Pass())])
  return block(statements or [line(cst.Pass())])


def _map_suites(node: cst.BaseStatement, transform, enter_loops: bool = True, enter_handlers: bool = True):
  """
  Applies `transform` to every statement list nested directly in `node`.

  Nested function and class bodies are never entered.
  """

  def suite(s: cst.BaseSuite) -> cst.BaseSuite:
    return _with_statements(s, transform(statement_list(s)))

  if isinstance(node, cst.If):
    orelse = node.orelse
    if isinstance(orelse, cst.If):
      orelse = _map_suites(orelse, transform, enter_loops, enter_handlers)
    elif orelse is not None:
      orelse = orelse.with_changes(body=suite(orelse.body))
    return node.with_changes(body=suite(node.body), orelse=orelse)
  if isinstance(node, (cst.For, cst.While)):
    changes = {}
    if enter_loops:
      changes["body"] = suite(node.body)
    if node.orelse is not None:
      changes["orelse"] = node.orelse.with_changes(body=suite(node.orelse.body))
    return node.with_changes(**changes)
  if isinstance(node, (cst.Try, cst.TryStar)):
    changes = {"body": suite(node.body)}
    if enter_handlers:
      changes["handlers"] = [h.with_changes(body=suite(h.body)) for h in node.handlers]
    for name in ("orelse", "finalbody"):
      part = getattr(node, name)
      if part is not None:
        changes[name] = part.with_changes(body=suite(part.body))
    return node.with_changes(**changes)
  if isinstance(node, cst.With):
    return node.with_changes(body=suite(node.body))
  if isinstance(node, cst.Match):
    return node.with_changes(cases=[case.with_changes(body=suite(case.body)) for case in node.cases])
  return node


def _mark_breaks(statements: Sequence[cst.BaseStatement], flag: str) -> Statements:
  """Clears `flag` before each `break` that targets the enclosing loop."""
  out: Statements = []
  for statement in statements:
    if isinstance(statement, cst.SimpleStatementLine):
      if not any(isinstance(small, cst.Break) for small in statement.body):
        out.append(statement)
        continue
      for small in statement.body:
        if isinstance(small, cst.Break):
          out.extend([assign(flag, cst.Name("False")), line(cst.Break())])
        else:
          out.append(line(small.with_changes(semicolon=cst.MaybeSentinel.DEFAULT)))
    else:
      out.append(_map_suites(statement, lambda body: _mark_breaks(body, flag), enter_loops=False))
  return out


def _name_bare_raises(statements: Sequence[cst.BaseStatement], name: str, found: List[bool]) -> Statements:
  """Replaces `raise` by `raise <name>` outside of nested handlers."""
  out: Statements = []
  for statement in statements:
    if isinstance(statement, cst.SimpleStatementLine):
      body = []
      for small in statement.body:
        if isinstance(small, cst.Raise) and small.exc is None:
          found.append(True)
          small = small.with_changes(exc=cst.Name(name))
        body.append(small)
      out.append(statement.with_changes(body=body))
    else:
      out.append(
        _map_suites(statement, lambda inner: _name_bare_raises(inner, name, found), enter_handlers=False)
      )
  return out


class _DeclarationCollector(cst.CSTTransformer):
  """Removes `global`/`nonlocal` statements of the function scope."""

  def __init__(self) -> None:
    self.globals: List[str] = []
    self.nonlocals: List[str] = []

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    return False

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    return False

  def visit_Lambda(self, node: cst.Lambda) -> bool:
    return False

  def leave_SimpleStatementLine(self, original_node, updated_node):
    kept = []
    for small in updated_node.body:
      if isinstance(small, (cst.Global, cst.Nonlocal)):
        names = self.globals if isinstance(small, cst.Global) else self.nonlocals
        names.extend(item.name.value for item in small.names if item.name.value not in names)
      else:
        kept.append(small.with_changes(semicolon=cst.MaybeSentinel.DEFAULT))
    if len(kept) == len(updated_node.body):
      return updated_node
    if not kept:
      return cst.RemoveFromParent()
    return updated_node.with_changes(body=kept)

  def leave_IndentedBlock(self, original_node, updated_node):
    if not updated_node.body:
      return updated_node.with_changes(body=[line(cst.Pass())])
    return updated_node


class SuperArguments(cst.CSTTransformer):
  """`super()` -> `super(__class__, <first parameter>)`."""

  def __init__(self, first: str) -> None:
    self.first = first

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    return False

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    return False

  def visit_Lambda(self, node: cst.Lambda) -> bool:
    return False

  def leave_Call(self, original_node: cst.Call, updated_node: cst.Call) -> cst.Call:
    if isinstance(updated_node.func, cst.Name) and updated_node.func.value == "super" and not updated_node.args:
      return updated_node.with_changes(args=[cst.Arg(cst.Name("__class__")), cst.Arg(cst.Name(self.first))])
    return updated_node


class _ComprehensionExtractor(cst.CSTTransformer):
  """Replaces comprehensions containing awaits, outermost first."""

  def __init__(self, desugarer: "Desugarer") -> None:
    self.desugarer = desugarer
    self.definitions: Statements = []

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    return False

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    return False

  def visit_Lambda(self, node: cst.Lambda) -> bool:
    return False

  def visit_ListComp(self, node: cst.ListComp) -> bool:
    return False

  def visit_SetComp(self, node: cst.SetComp) -> bool:
    return False

  def visit_DictComp(self, node: cst.DictComp) -> bool:
    return False

  def _replace(self, original_node: cst.BaseComp, updated_node: cst.BaseComp) -> cst.BaseExpression:
    if not contains_await(original_node):
      return updated_node
    definitions, replacement = self.desugarer.comprehension(original_node)
    self.definitions.extend(definitions)
    return replacement

  def leave_ListComp(self, original_node: cst.ListComp, updated_node: cst.ListComp) -> cst.BaseExpression:
    return self._replace(original_node, updated_node)

  def leave_SetComp(self, original_node: cst.SetComp, updated_node: cst.SetComp) -> cst.BaseExpression:
    return self._replace(original_node, updated_node)

  def leave_DictComp(self, original_node: cst.DictComp, updated_node: cst.DictComp) -> cst.BaseExpression:
    return self._replace(original_node, updated_node)


class Desugarer:
  """
  Desugars one async function.

  Attributes:
      lowerer: The `FunctionLowerer` owning the function, used for fresh
          names and to lower extracted comprehension functions.
      globals: Names declared `global` in the function.
      nonlocals: Names declared `nonlocal` in the function.
  """

  def __init__(self, lowerer) -> None:
    self.lowerer = lowerer
    self.function: cst.FunctionDef = lowerer.function
    self.globals: List[str] = []
    self.nonlocals: List[str] = []

  def run(self) -> cst.FunctionDef:
    """
    Returns:
        cst.FunctionDef: The desugared function, without its `global` and
        `nonlocal` statements (see `declarations`).
    """
    self.validate()
    collector = _DeclarationCollector()
    body = self.function.body.visit(collector)
    self.globals, self.nonlocals = collector.globals, collector.nonlocals
    first = self._first_parameter()
    if self.lowerer.method and first is not None:
      body = body.visit(SuperArguments(first))
    statements = self._block(statement_list(body))
    return self.function.with_changes(body=_with_statements(body, statements))

  def declarations(self) -> Statements:
    out: Statements = []
    if self.globals:
      out.append(global_(self.globals))
    if self.nonlocals:
      out.append(nonlocal_(self.nonlocals))
    return out

  def validate(self) -> None:
    body = self.function.body
    for node in walk_scope(body):
      if isinstance(node, cst.TryStar) and contains_await(node):
        raise UnsupportedConstructError("Suspension inside 'try/except*'", source_of(node))
      if isinstance(node, cst.GeneratorExp) and contains_await(node):
        raise UnsupportedConstructError("Asynchronous generator expressions cannot be lowered", source_of(node))
    dynamic = find_dynamic_evaluation(body)
    if dynamic is not None:
      raise UnsupportedConstructError("Dynamic evaluation depends on the local scope", source_of(dynamic))

  def _first_parameter(self) -> Optional[str]:
    params = self.function.params
    positional = [*params.posonly_params, *params.params]
    return positional[0].name.value if positional else None

  # --- Statements ---

  def _block(self, statements: Sequence[cst.BaseStatement]) -> Statements:
    out: Statements = []
    for statement in statements:
      out.extend(self._statement(statement))
    return out

  def _suite(self, suite: cst.BaseSuite) -> cst.BaseSuite:
    return _with_statements(suite, self._block(statement_list(suite)))

  def _statement(self, statement: cst.BaseStatement) -> Statements:
    if not contains_await(statement):
      return [statement]
    if isinstance(statement, cst.SimpleStatementLine):
      return self._simple(statement)
    if isinstance(statement, cst.If):
      return self._if(statement)
    if isinstance(statement, (cst.While, cst.For)):
      return self._loop(statement)
    if isinstance(statement, cst.Try):
      return self._try(statement)
    if isinstance(statement, cst.With):
      return self._block(self._with(statement))
    if isinstance(statement, cst.Match):
      return self._match(statement)
    if isinstance(statement, (cst.FunctionDef, cst.ClassDef)):
      return self._definition(statement)
    return [statement]

  def _simple(self, statement: cst.SimpleStatementLine) -> Statements:
    if len(statement.body) > 1:
      out: Statements = []
      for index, small in enumerate(statement.body):
        single = statement.with_changes(
          body=[small.with_changes(semicolon=cst.MaybeSentinel.DEFAULT)],
          leading_lines=statement.leading_lines if index == 0 else [],
        )
        out.extend(self._statement(single))
      return out
    small = statement.body[0]
    if isinstance(small, cst.Assert):
      return self._block([self._assert(small)])
    if isinstance(small, cst.Assign) and len(small.targets) > 1 and any(contains_await(t) for t in small.targets):
      value = self.lowerer.temporary("value")
      split = [assign(value, small.value)] + [assign(t.target, cst.Name(value)) for t in small.targets]
      return self._block(split)
    rewritten, definitions = self.expression(statement)
    return definitions + [rewritten]

  @staticmethod
  def _assert(node: cst.Assert) -> cst.If:
    error = call("AssertionError") if node.msg is None else call("AssertionError", node.msg)
    failure = line(cst.Raise(exc=error))
    return if_(cst.Name("__debug__"), [if_(not_(node.test), [failure])])

  def _if(self, node: cst.If) -> Statements:
    test, definitions = self.expression(node.test)
    orelse = node.orelse
    if isinstance(orelse, cst.If):
      rewritten = self._statement(orelse)
      if len(rewritten) == 1 and isinstance(rewritten[0], cst.If):
        orelse = rewritten[0]
      else:
        orelse = cst.Else(body=block(rewritten))
    elif orelse is not None:
      orelse = orelse.with_changes(body=self._suite(orelse.body))
    return definitions + [node.with_changes(test=test, body=self._suite(node.body), orelse=orelse)]

  def _loop(self, node) -> Statements:
    if isinstance(node, cst.While):
      test, definitions = self.expression(node.test)
      node = node.with_changes(test=test)
    else:
      iterable, definitions = self.expression(node.iter)
      node = node.with_changes(iter=iterable)
    body = statement_list(node.body)
    orelse = node.orelse
    if orelse is None:
      return definitions + [node.with_changes(body=_with_statements(node.body, self._block(body)))]
    else_body = self._block(statement_list(orelse.body))
    node = node.with_changes(orelse=None)
    if not paths_break(body).any:
      return definitions + [node.with_changes(body=_with_statements(node.body, self._block(body)))] + else_body
    flag = self.lowerer.flag("no_break")
    loop = node.with_changes(body=_with_statements(node.body, self._block(_mark_breaks(body, flag))))
    return definitions + [assign(flag, cst.Name("True")), loop, if_(cst.Name(flag), else_body)]

  def _try(self, node: cst.Try) -> Statements:
    handlers = []
    for handler in node.handlers:
      found: List[bool] = []
      name = handler.name.name.value if handler.name is not None else self.lowerer.names.fresh("error")
      statements = _name_bare_raises(statement_list(handler.body), name, found)
      if found and handler.name is None:
        handler = handler.with_changes(name=cst.AsName(name=cst.Name(name)))
      handlers.append(handler.with_changes(body=_with_statements(handler.body, self._block(statements))))
    body = self._block(statement_list(node.body))
    finalbody = node.finalbody
    if finalbody is not None:
      finalbody = finalbody.with_changes(body=self._suite(finalbody.body))
    if node.orelse is None:
      return [node.with_changes(body=_with_statements(node.body, body), handlers=handlers, finalbody=finalbody)]

    flag = self.lowerer.flag("success")
    guarded = cst.Try(body=block([*body, assign(flag, cst.Name("True"))]), handlers=handlers)
    statements: Statements = [guarded, if_(cst.Name(flag), self._block(statement_list(node.orelse.body)))]
    if finalbody is not None:
      statements = [cst.Try(body=block(statements), finalbody=finalbody)]
    return [assign(flag, cst.Name("False")), *statements]

  def _with(self, node: cst.With) -> Statements:
    """PEP 343 expansion of the first item; remaining items stay nested."""
    body = statement_list(node.body)
    if len(node.items) > 1:
      body = [node.with_changes(items=node.items[1:], leading_lines=[])]
    item = node.items[0]
    asynchronous = node.asynchronous is not None
    enter_name, exit_name = ("__aenter__", "__aexit__") if asynchronous else ("__enter__", "__exit__")

    manager = self.lowerer.temporary("manager")
    exit_ = self.lowerer.temporary("exit")
    ok = self.lowerer.flag("entered")
    error = self.lowerer.temporary("error")

    def special(method: str) -> cst.Attribute:
      return cst.Attribute(value=call("type", manager), attr=cst.Name(method))

    def exit_call(*args: Optional[cst.BaseExpression]) -> cst.BaseExpression:
      result = call(exit_, manager, *args)
      return parenthesize(cst.Await(expression=result)) if asynchronous else result

    enter: cst.BaseExpression = call(special(enter_name), manager)
    if asynchronous:
      enter = cst.Await(expression=enter)
    statements: Statements = [
      assign(manager, item.item).with_changes(leading_lines=node.leading_lines),
      assign(exit_, special(exit_name)),
    ]
    prologue: Statements = []
    target = item.asname.name if item.asname is not None else None
    if target is None:
      statements.append(expr_statement(enter))
    elif isinstance(target, cst.Name):
      statements.append(assign(target, enter))
    else:
      value = self.lowerer.temporary("value")
      statements.append(assign(value, enter))
      prologue.append(assign(target, cst.Name(value)))
    statements.append(assign(ok, cst.Name("True")))

    suppressed = exit_call(call("type", error), cst.Name(error), cst.Attribute(value=cst.Name(error), attr=cst.Name("__traceback__")))
    handler = cst.ExceptHandler(
      type=cst.Name("BaseException"),
      name=cst.AsName(name=cst.Name(error)),
      body=block([assign(ok, cst.Name("False")), if_(not_(suppressed), [line(cst.Raise(exc=cst.Name(error)))])]),
    )
    finalizer = cst.Finally(body=block([if_(cst.Name(ok), [expr_statement(exit_call(None, None, None))])]))
    statements.append(cst.Try(body=block([*prologue, *body]), handlers=[handler], finalbody=finalizer))
    self.lowerer.tracer.log_restructure("async with" if asynchronous else "with", "try/finally")
    return statements

  def _match(self, node: cst.Match) -> Statements:
    subject, definitions = self.expression(node.subject)
    cases = []
    for case in node.cases:
      guard = case.guard
      if guard is not None:
        guard, more = self.expression(guard)
        definitions.extend(more)
      cases.append(case.with_changes(guard=guard, body=self._suite(case.body)))
    return definitions + [node.with_changes(subject=subject, cases=cases)]

  def _definition(self, node) -> Statements:
    definitions: Statements = []
    decorators = []
    for decorator in node.decorators:
      expression, more = self.expression(decorator.decorator)
      definitions.extend(more)
      decorators.append(decorator.with_changes(decorator=expression))
    node = node.with_changes(decorators=decorators)
    if isinstance(node, cst.FunctionDef):
      params, more = self.expression(node.params)
      definitions.extend(more)
      return definitions + [node.with_changes(params=params)]
    bases = []
    for base in node.bases:
      base, more = self.expression(base)
      definitions.extend(more)
      bases.append(base)
    keywords = []
    for keyword in node.keywords:
      keyword, more = self.expression(keyword)
      definitions.extend(more)
      keywords.append(keyword)
    return definitions + [node.with_changes(bases=bases, keywords=keywords)]

  # --- Expressions ---

  def expression(self, node: cst.CSTNode) -> Tuple[cst.CSTNode, Statements]:
    """
    Extracts comprehensions containing awaits from `node`.

    Returns:
        The rewritten node and the (lowered) function definitions to insert
        before the statement owning it.
    """
    extractor = _ComprehensionExtractor(self)
    return node.visit(extractor), extractor.definitions

  def comprehension(self, node: cst.BaseComp) -> Tuple[Statements, cst.BaseExpression]:
    """
    Builds `async def _comp(_iterable)` computing `node`, lowers it, and
    returns it with the expression awaiting its result.
    """
    names = self.lowerer.names
    function = names.fresh("comp")
    iterable = names.fresh("iterable")
    items = names.fresh("items")

    if isinstance(node, cst.DictComp):
      key = names.fresh("key")
      innermost: Statements = [
        assign(key, node.key),
        assign(cst.Subscript(value=cst.Name(items), slice=[cst.SubscriptElement(cst.Index(cst.Name(key)))]), node.value),
      ]
      initial: cst.BaseExpression = cst.Dict(elements=[])
    elif isinstance(node, cst.SetComp):
      innermost = [expr_statement(call(cst.Attribute(value=cst.Name(items), attr=cst.Name("add")), node.elt))]
      initial = call("set")
    else:
      innermost = [expr_statement(call(cst.Attribute(value=cst.Name(items), attr=cst.Name("append")), node.elt))]
      initial = cst.List(elements=[])

    clauses = []
    clause = node.for_in
    while clause is not None:
      clauses.append(clause)
      clause = clause.inner_for_in
    statements = innermost
    for clause in reversed(clauses):
      for condition in reversed(clause.ifs):
        statements = [if_(condition.test, statements)]
      source = cst.Name(iterable) if clause is clauses[0] else clause.iter
      statements = [
        cst.For(target=clause.target, iter=source, body=block(statements), asynchronous=clause.asynchronous)
      ]

    body: Statements = self._escaping_declarations(node)
    body += [assign(items, initial), *statements, return_(items)]
    definition = cst.FunctionDef(
      name=cst.Name(function),
      params=cst.Parameters(params=[cst.Param(cst.Name(iterable))]),
      body=block(body),
      asynchronous=cst.Asynchronous(),
    )
    self.lowerer.tracer.log_restructure(type(node).__name__, "async def")
    lowered = self.lowerer.lower_nested(definition)
    awaited = cst.Await(
      expression=cst.Call(func=cst.Name(function), args=[cst.Arg(clauses[0].iter)]),
      lpar=[cst.LeftParen()],
      rpar=[cst.RightParen()],
    )
    return [lowered], awaited

  def _escaping_declarations(self, node: cst.BaseComp) -> Statements:
    """Walrus targets in a comprehension bind in the function scope."""
    escaping = sorted(collect_scope(node).escaping)
    if not escaping:
      return []
    declared_global = [name for name in escaping if name in self.globals]
    declared_nonlocal = [name for name in escaping if name not in self.globals]
    out: Statements = []
    if declared_global:
      out.append(global_(declared_global))
    if declared_nonlocal:
      out.append(nonlocal_(declared_nonlocal))
    return out
