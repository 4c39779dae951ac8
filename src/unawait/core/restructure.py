"""
Control-Flow Restructuring Mixin.

Compound statements whose suspension points sit inside nested blocks are
rebuilt from runtime combinators:

*   **if**: rewritten in place when nothing follows it (or nothing following
    it can run); otherwise wrapped in a branch closure run by `_invoke`.
*   **while**: `_for(test, None, body)`, or `_do(body, check)` when the test
    is always true.
*   **for**: `_for_to` over a `range`, `_for_in` over `mapping.keys()`,
    `_for_own` over `vars(obj)`, `_for_of` over anything else and
    `_for_await_of` for `async for`.
*   **match**: rewritten in place when possible, otherwise `_switch` over
    pattern-testing closures.
*   **try**: `_catch` with an `isinstance` dispatching handler, and
    `_finally` / `_finally_rethrows` for `finally` clauses.

The statements following a restructured construct become the continuation
of the helper call, preceded by the exit checks recorded on its frame.
"""

from typing import List, Optional, Sequence, Tuple

import libcst as cst

from unawait.analysis.awaits import contains_await
from unawait.analysis.reachability import always_exits, is_irrefutable, is_statically_true
from unawait.core.builders import (
  and_,
  assign,
  block,
  call,
  if_,
  line,
  list_,
  not_,
  or_,
  return_,
  statement_list,
  tuple_,
)
from unawait.core.exits import Frame
from unawait.enums import FrameKind
from unawait.errors import StructuralInvariantError
from unawait.utils.node_source import source_of

Statements = List[cst.BaseStatement]


def _is_boolean(expression: cst.BaseExpression) -> bool:
  if isinstance(expression, cst.Comparison):
    return True
  if isinstance(expression, cst.UnaryOperation):
    return isinstance(expression.operator, cst.Not)
  if isinstance(expression, cst.Name):
    return expression.value in ("True", "False")
  if isinstance(expression, cst.BooleanOperation):
    return _is_boolean(expression.left) and _is_boolean(expression.right)
  return False


def _is_wildcard(case: cst.MatchCase) -> bool:
  pattern = case.pattern
  return case.guard is None and isinstance(pattern, cst.MatchAs) and pattern.pattern is None and pattern.name is None


def _only_pass(statements: Sequence[cst.BaseStatement]) -> bool:
  return all(
    isinstance(s, cst.SimpleStatementLine) and all(isinstance(small, cst.Pass) for small in s.body)
    for s in statements
  )


def _with_body(node: cst.CSTNode, statements: Statements) -> cst.CSTNode:
  if isinstance(node.body, cst.IndentedBlock):
    return node.with_changes(body=node.body.with_changes(body=statements))
  return node.with_changes(body=block(statements))


class RestructureMixin:
  """Rebuilds compound statements containing suspension points."""

  # --- Tail chaining ---

  def chain_tail(
    self,
    frame: Frame,
    tail: Statements,
    frames: List[Frame],
    value: Optional[cst.BaseExpression] = None,
    branch: Optional[cst.BaseExpression] = None,
  ) -> Statements:
    """
    Runs `tail` after a restructured construct.

    Args:
        frame: The construct's frame, holding the flags to check.
        tail: Statements following the construct.
        frames: Frames enclosing the construct.
        value: Deferred (or plain) outcome of the construct, chained with
            `_continue`.
        branch: Zero-argument closure running the construct, chained with
            `_invoke`.
    """
    if branch is None and (not tail or not frame.tail_live):
      return [return_(value)] + (self.rewrite(tail, frames) if tail else [])
    result = self.temporary("result")
    body = self.exit_checks(frame, result) + self.rewrite(tail, frames)
    if _only_pass(body):
      if branch is not None:
        return [return_(self.helper_call("_invoke_ignored", branch))]
      return [return_(self.helper_call("_continue_ignored", value))]
    defs, then = self.continuation(result, body)
    if branch is not None:
      chained = self.helper_call("_invoke", branch, then) if then is not None else cst.Call(func=branch)
    else:
      chained = self.helper_call("_continue", value, then) if then is not None else value
    return defs + [return_(chained)]

  # --- if ---

  def restructure_if(self, node: cst.If, tail: Statements, frames: List[Frame]) -> Statements:
    if not tail or always_exits(node):
      self.tracer.log_restructure("if", "in place")
      out: Statements = [self._if_in_place(node, frames)]
      if tail:
        out.extend(self.rewrite(tail, frames))
      return out
    self.tracer.log_restructure("if", "_invoke")
    frame = Frame(FrameKind.BRANCH, tail_live=True)
    inner = self._if_in_place(node, [*frames, frame])
    defs, branch = self.closure("branch", [], [inner])
    return defs + self.chain_tail(frame, tail, frames, branch=branch)

  def _if_in_place(self, node: cst.If, frames: List[Frame]) -> cst.If:
    body = self.rewrite(statement_list(node.body), frames)
    orelse = node.orelse
    if isinstance(orelse, cst.If):
      rewritten = self.rewrite([orelse], frames)
      if len(rewritten) == 1 and isinstance(rewritten[0], cst.If):
        orelse = rewritten[0]
      else:
        orelse = cst.Else(body=block(rewritten))
    elif orelse is not None:
      orelse = orelse.with_changes(body=block(self.rewrite(statement_list(orelse.body), frames)))
    return _with_body(node, body).with_changes(orelse=orelse)

  # --- loops ---

  def restructure_loop(self, node, tail: Statements, frames: List[Frame]) -> Statements:
    if node.orelse is not None:
      raise StructuralInvariantError("Loop 'else' was not desugared", source_of(node))
    frame = Frame(FrameKind.LOOP, tail_live=bool(tail) and not always_exits(node))
    if isinstance(node, cst.While):
      return self._restructure_while(node, frame, tail, frames)
    return self._restructure_for(node, frame, tail, frames)

  def _loop_body(self, frame: Frame, statements: Statements, frames: List[Frame], params: Sequence[str]):
    body = self.rewrite(statements, [*frames, frame])
    if frame.skip is not None:
      body = [assign(frame.skip, cst.Name("False")), *body]
    return self.closure("body", params, body)

  def _interrupt_reset(self, frame: Frame) -> Statements:
    if frame.interrupt is None:
      return []
    return [assign(frame.interrupt, cst.Name("False"))]

  def _truth(self, expression: cst.BaseExpression) -> cst.BaseExpression:
    if _is_boolean(expression):
      return expression
    if self.bindings.is_stable_name("bool"):
      return call("bool", expression)
    return cst.UnaryOperation(operator=cst.Not(), expression=not_(expression))

  def _restructure_while(self, node: cst.While, frame: Frame, tail: Statements, frames: List[Frame]) -> Statements:
    body_defs, body = self._loop_body(frame, statement_list(node.body), frames, [])
    flags = [cst.Name(flag) for flag in self.loop_flags(frame)]
    if is_statically_true(node.test):
      self.tracer.log_restructure("while", "_do")
      check_value = not_(or_(flags)) if flags else cst.Name("True")
      check_defs, check = self.closure("check", [], [return_(check_value)])
      loop = self.helper_call("_do", body, check)
    else:
      self.tracer.log_restructure("while", "_for")
      test = self._truth(node.test)
      if flags:
        test = and_(not_(or_(flags)), test)
      check_defs, check = self.closure("test", [], self.rewrite([return_(test)], []))
      loop = self.helper_call("_for", check, None, body)
    defs = self._interrupt_reset(frame) + body_defs + check_defs
    return defs + self.chain_tail(frame, tail, frames, value=loop)

  def _loop_target(self, node: cst.For) -> Tuple[str, Statements]:
    target = node.target
    if (
      isinstance(target, cst.Name)
      and self.bindings.is_plain_local(target.value)
      and not self.bindings.is_captured(target.value)
      and self.bindings.is_confined(target.value, [node])
    ):
      return target.value, []
    item = self.temporary("item")
    return item, [assign(target, cst.Name(item))]

  def _iteration(self, node: cst.For, flagged: bool) -> Tuple[str, cst.BaseExpression]:
    """Picks the iteration helper and the value it iterates."""
    if node.asynchronous is not None:
      return "_for_await_of", node.iter
    iterable = node.iter
    if isinstance(iterable, (cst.List, cst.Tuple)):
      if not any(isinstance(element, cst.StarredElement) for element in iterable.elements):
        return "_for_values", iterable
    if isinstance(iterable, cst.Call) and isinstance(iterable.func, cst.Name):
      name = iterable.func.value
      stable = self.bindings.is_stable(iterable.func)
      if name == "range" and stable and not flagged:
        return "_for_to", iterable
      if name == "vars" and stable and len(iterable.args) == 1 and not iterable.args[0].star and iterable.args[0].keyword is None:
        return "_for_own", iterable.args[0].value
    if (
      isinstance(iterable, cst.Call)
      and not iterable.args
      and isinstance(iterable.func, cst.Attribute)
      and iterable.func.attr.value == "keys"
    ):
      return "_for_in", iterable.func.value
    return "_for_of", iterable

  def _restructure_for(self, node: cst.For, frame: Frame, tail: Statements, frames: List[Frame]) -> Statements:
    param, prefix = self._loop_target(node)
    body_defs, body = self._loop_body(frame, prefix + statement_list(node.body), frames, [param])
    flags = [cst.Name(flag) for flag in self.loop_flags(frame)]
    check_defs: Statements = []
    check = None
    if flags:
      check_defs, check = self.closure("check", [], [return_(or_(flags))])
    helper, iterable = self._iteration(node, bool(flags))
    self.tracer.log_restructure("async for" if node.asynchronous else "for", helper)
    loop = self.helper_call(helper, iterable, body, check)
    defs = self._interrupt_reset(frame) + body_defs + check_defs
    return defs + self.chain_tail(frame, tail, frames, value=loop)

  # --- match ---

  def restructure_match(self, node: cst.Match, tail: Statements, frames: List[Frame]) -> Statements:
    guarded = any(case.guard is not None and contains_await(case.guard) for case in node.cases)
    exits = always_exits(node)
    if not guarded and (not tail or exits):
      self.tracer.log_restructure("match", "in place")
      cases = [_with_body(case, self.rewrite(statement_list(case.body), frames)) for case in node.cases]
      out: Statements = [node.with_changes(cases=cases)]
      if tail:
        out.extend(self.rewrite(tail, frames))
      return out

    self.tracer.log_restructure("match", "_switch")
    frame = Frame(FrameKind.BRANCH, tail_live=bool(tail) and not exits)
    subject = node.subject
    defs: Statements = []
    if not (isinstance(subject, cst.Name) and self.bindings.is_stable(subject)):
      name = self.temporary("subject")
      defs.append(assign(name, subject))
      subject = cst.Name(name)

    cases = []
    for case in node.cases:
      body_defs, body = self.closure("case", [], self.rewrite(statement_list(case.body), [*frames, frame]))
      defs.extend(body_defs)
      if _is_wildcard(case):
        cases.append(tuple_([None, body]))
        continue
      hit = return_(cst.Name("True") if case.guard is None else self._truth(case.guard))
      tests = [cst.MatchCase(pattern=case.pattern, body=block([hit]))]
      if not is_irrefutable(case.pattern):
        tests.append(cst.MatchCase(pattern=cst.MatchAs(), body=block([return_(cst.Name("False"))])))
      test_match = cst.Match(subject=subject.deep_clone(), cases=tests)
      test_defs, test = self.closure("test", [], self.rewrite([test_match], []))
      defs.extend(test_defs)
      cases.append(tuple_([test, body]))

    switch = self.helper_call("_switch", cst.Name("True"), list_(cases))
    return defs + self.chain_tail(frame, tail, frames, value=switch)

  # --- try ---

  def restructure_try(self, node: cst.Try, tail: Statements, frames: List[Frame]) -> Statements:
    if node.orelse is not None:
      raise StructuralInvariantError("Try 'else' was not desugared", source_of(node))
    frame = Frame(FrameKind.BRANCH, tail_live=bool(tail) and not always_exits(node))
    inner = [*frames, frame]
    defs, guarded = self.closure("try", [], self.rewrite(statement_list(node.body), inner))
    outcome = None
    if node.handlers:
      self.tracer.log_restructure("try/except", "_catch")
      error = self.temporary("error")
      handler_body = self.rewrite(self._dispatch(node.handlers, error), inner)
      handler_defs, handler = self.closure("handler", [error], handler_body)
      defs.extend(handler_defs)
      outcome = self.helper_call("_catch", guarded, handler)
      if node.finalbody is not None:
        wrapper_defs, guarded = self.closure("guarded", [], [return_(outcome)])
        defs.extend(wrapper_defs)

    if node.finalbody is not None:
      final = statement_list(node.finalbody.body)
      if always_exits(final):
        self.tracer.log_restructure("try/finally", "_finally")
        final_defs, finalizer = self.closure("finalizer", [], self.rewrite(final, inner))
        outcome = self.helper_call("_finally", guarded, finalizer)
      else:
        self.tracer.log_restructure("try/finally", "_finally_rethrows")
        thrown, value = self.temporary("thrown"), self.temporary("value")
        rethrow = self.internal_return(self.helper_call("_rethrow", cst.Name(thrown), cst.Name(value)))
        final_defs, finalizer = self.closure("finalizer", [thrown, value], self.rewrite([*final, rethrow], inner))
        outcome = self.helper_call("_finally_rethrows", guarded, finalizer)
      defs.extend(final_defs)

    return defs + self.chain_tail(frame, tail, frames, value=outcome)

  def _dispatch(self, handlers: Sequence[cst.ExceptHandler], error: str) -> Statements:
    """Turns `except` clauses into an `isinstance` chain over `error`."""
    branches = []
    fallback: Statements = [line(cst.Raise(exc=cst.Name(error)))]
    for handler in handlers:
      body = statement_list(handler.body)
      if handler.name is not None:
        body = [assign(handler.name.name, cst.Name(error)), *body]
      if handler.type is None:
        fallback = body
        break
      branches.append((call("isinstance", cst.Name(error), handler.type), body))
    chained: Optional[cst.If] = None
    for test, body in reversed(branches):
      if chained is None:
        chained = if_(test, body, fallback)
      else:
        chained = if_(test, body, chained)
    return [chained] if chained is not None else fallback
