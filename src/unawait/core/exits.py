"""
Exit Normalization Mixin.

Once a construct is restructured, its blocks live in closures: a `return`,
`break` or `continue` inside them would only leave the closure. This mixin
rewrites those exits as they are emitted, using sentinel flags:

* `return v` sets the function exit flag, then returns `v` locally.
* `break` sets the interrupt flag of the innermost restructured loop.
* `continue` returns locally, setting the loop skip flag first when it leaves
  a construct whose tail would otherwise run.

Every crossed construct with a live tail records the flags it must check at
the head of its continuation; restructured loops test them before each
iteration. Exits that cross no closure boundary are left untouched.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import libcst as cst

from unawait.core.builders import assign, block, if_, line, or_, return_, statement_list
from unawait.enums import FrameKind
from unawait.errors import StructuralInvariantError
from unawait.utils.node_source import source_of

Statements = List[cst.BaseStatement]


@dataclass
class Frame:
  """
  A restructured construct enclosing the code being emitted.

  Attributes:
      kind: BRANCH (if/match/try) or LOOP.
      tail_live: True when statements after the construct can run.
      checks: Flags to test at the head of the continuation.
      interrupt: Interrupt flag of a loop, created by the first `break`.
      skip: Skip flag of a loop, created by the first crossing `continue`.
      exits: True when a `return` leaves the loop.
  """

  kind: FrameKind
  tail_live: bool
  checks: List[str] = field(default_factory=list)
  interrupt: Optional[str] = None
  skip: Optional[str] = None
  exits: bool = False

  def register(self, flag: str) -> None:
    if flag not in self.checks:
      self.checks.append(flag)


def _innermost_loop(frames: Sequence[Frame], node: cst.CSTNode) -> int:
  for index in range(len(frames) - 1, -1, -1):
    if frames[index].kind is FrameKind.LOOP:
      return index
  raise StructuralInvariantError("Loop exit outside of any loop", source_of(node))


class ExitsMixin:
  """Rewrites `return`/`break`/`continue` that cross closure boundaries."""

  def emit(self, statement: cst.BaseStatement, frames: List[Frame]) -> Statements:
    """
    Emits a statement without suspension points, normalizing its exits.

    Args:
        statement: The statement to emit.
        frames: Enclosing restructured constructs, innermost last.
    """
    if not frames:
      return [statement]
    return self._normalize(statement, frames, 0)

  def exit_checks(self, frame: Frame, result: str) -> Statements:
    """`if <flags>: return <result>` for the head of a continuation."""
    if not frame.checks:
      return []
    return [if_(or_([cst.Name(flag) for flag in frame.checks]), [return_(result)])]

  def loop_flags(self, frame: Frame) -> List[str]:
    """Flags that stop a restructured loop before its next iteration."""
    flags = []
    if frame.interrupt is not None:
      flags.append(frame.interrupt)
    if frame.exits:
      flags.append(self.function_exit_flag())
    return flags

  # --- Traversal ---

  def _normalize(self, statement: cst.BaseStatement, frames: List[Frame], depth: int) -> Statements:
    if isinstance(statement, cst.SimpleStatementLine):
      return self._normalize_line(statement, frames, depth)
    if isinstance(statement, cst.If):
      return [self._normalize_if(statement, frames, depth)]
    if isinstance(statement, (cst.While, cst.For)):
      orelse = statement.orelse
      if orelse is not None:
        orelse = orelse.with_changes(body=self._normalize_suite(orelse.body, frames, depth))
      return [
        statement.with_changes(body=self._normalize_suite(statement.body, frames, depth + 1), orelse=orelse)
      ]
    if isinstance(statement, (cst.Try, cst.TryStar)):
      handlers = [
        handler.with_changes(body=self._normalize_suite(handler.body, frames, depth))
        for handler in statement.handlers
      ]
      changes = {"body": self._normalize_suite(statement.body, frames, depth), "handlers": handlers}
      for name in ("orelse", "finalbody"):
        part = getattr(statement, name)
        if part is not None:
          changes[name] = part.with_changes(body=self._normalize_suite(part.body, frames, depth))
      return [statement.with_changes(**changes)]
    if isinstance(statement, cst.With):
      return [statement.with_changes(body=self._normalize_suite(statement.body, frames, depth))]
    if isinstance(statement, cst.Match):
      cases = [case.with_changes(body=self._normalize_suite(case.body, frames, depth)) for case in statement.cases]
      return [statement.with_changes(cases=cases)]
    return [statement]

  def _normalize_if(self, node: cst.If, frames: List[Frame], depth: int) -> cst.If:
    orelse = node.orelse
    if isinstance(orelse, cst.If):
      orelse = self._normalize_if(orelse, frames, depth)
    elif orelse is not None:
      orelse = orelse.with_changes(body=self._normalize_suite(orelse.body, frames, depth))
    return node.with_changes(body=self._normalize_suite(node.body, frames, depth), orelse=orelse)

  def _normalize_suite(self, suite: cst.BaseSuite, frames: List[Frame], depth: int) -> cst.BaseSuite:
    statements = statement_list(suite)
    normalized: Statements = []
    for statement in statements:
      normalized.extend(self._normalize(statement, frames, depth))
    if isinstance(suite, cst.IndentedBlock):
      return suite.with_changes(body=normalized)
    if len(normalized) == len(statements) and all(a is b for a, b in zip(normalized, statements)):
      return suite
    return block(normalized)

  def _normalize_line(self, statement: cst.SimpleStatementLine, frames: List[Frame], depth: int) -> Statements:
    replacements = [self._normalize_small(small, frames, depth) for small in statement.body]
    if all(r is None for r in replacements):
      return [statement]
    out: Statements = []
    pending: List[cst.BaseSmallStatement] = []
    for small, replacement in zip(statement.body, replacements):
      if replacement is None:
        pending.append(small.with_changes(semicolon=cst.MaybeSentinel.DEFAULT))
        continue
      if pending:
        out.append(line(*pending))
        pending = []
      out.extend(replacement)
    if pending:
      out.append(line(*pending))
    out[0] = out[0].with_changes(leading_lines=statement.leading_lines)
    return out

  def _normalize_small(
    self, small: cst.BaseSmallStatement, frames: List[Frame], depth: int
  ) -> Optional[Statements]:
    if isinstance(small, cst.Return):
      return self._normalize_return(small, frames)
    if depth > 0:
      return None
    if isinstance(small, cst.Break):
      return self._normalize_break(small, frames)
    if isinstance(small, cst.Continue):
      return self._normalize_continue(small, frames)
    return None

  # --- Exits ---

  def _normalize_return(self, node: cst.Return, frames: List[Frame]) -> Optional[Statements]:
    if id(node) in self._internal_returns:
      return None
    live = [frame for frame in frames if frame.tail_live]
    loops = [frame for frame in frames if frame.kind is FrameKind.LOOP]
    if not live and not loops:
      return None
    flag = self.function_exit_flag()
    for frame in live:
      frame.register(flag)
    for frame in loops:
      frame.exits = True
    out: Statements = []
    value = node.value
    if value is not None and not self.bindings.is_stable(value):
      result = self.temporary("result")
      out.append(assign(result, value))
      value = cst.Name(result)
    out.append(assign(flag, cst.Name("True")))
    out.append(line(cst.Return(value=value)))
    return out

  def _normalize_break(self, node: cst.Break, frames: List[Frame]) -> Statements:
    index = _innermost_loop(frames, node)
    loop = frames[index]
    if loop.interrupt is None:
      loop.interrupt = self.flag("interrupt")
    for frame in frames[index + 1 :]:
      if frame.tail_live:
        frame.register(loop.interrupt)
    return [assign(loop.interrupt, cst.Name("True")), return_()]

  def _normalize_continue(self, node: cst.Continue, frames: List[Frame]) -> Statements:
    index = _innermost_loop(frames, node)
    loop = frames[index]
    crossed = [frame for frame in frames[index + 1 :] if frame.tail_live]
    if not crossed:
      return [return_()]
    if loop.skip is None:
      loop.skip = self.flag("skip")
    for frame in crossed:
      frame.register(loop.skip)
    return [assign(loop.skip, cst.Name("True")), return_()]
