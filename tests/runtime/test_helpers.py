"""
Tests for the Runtime Combinators used by lowered code.
"""

import pytest

from unawait.runtime import Pact, Promise, PromiseState, run, settle
from unawait.runtime.helpers import (
  _AsyncGenerator,
  _async,
  _await,
  _await_ignored,
  _call,
  _call_ignored,
  _catch,
  _continue,
  _continue_ignored,
  _do,
  _empty,
  _finally,
  _finally_rethrows,
  _for,
  _for_await_of,
  _for_in,
  _for_of,
  _for_own,
  _for_to,
  _for_values,
  _invoke,
  _invoke_ignored,
  _resolve,
  _rethrow,
  _switch,
)
from conftest import fail_later, later


def test_async_turns_sync_exception_into_rejection():
  @_async
  def explode():
    raise ValueError("sync")

  promise = explode()
  assert isinstance(promise, Promise)
  with pytest.raises(ValueError, match="sync"):
    run(promise)


def test_async_adopts_returned_pact():
  pact = Pact()

  @_async
  def lowered():
    return pact

  promise = lowered()
  settle(pact, PromiseState.FULFILLED, "value")
  assert run(promise) == "value"


def test_resolve_wraps_plain_values():
  assert run(_resolve(3)) == 3
  assert run(_resolve()) is None


def test_await_plain_value_suspends():
  seen = []
  result = _await(4, lambda v: seen.append(v) or v * 2)
  assert seen == []
  assert run(result) == 8
  assert seen == [4]


def test_await_direct_skips_suspension():
  assert _await(4, lambda v: v + 1, True) == 5
  assert _await(4, None, True) == 4


def test_await_ignored_discards_value():
  assert run(_await_ignored(later("x"))) is None
  assert _await_ignored(1, True) is None


def test_continue_is_synchronous_for_plain_values():
  assert _continue(2, lambda v: v + 1) == 3
  assert run(_continue(later(2), lambda v: v + 1)) == 3


def test_call_catches_sync_errors():
  def explode():
    raise KeyError("k")

  with pytest.raises(KeyError):
    run(_call(explode))
  assert run(_call(lambda: later(1), lambda v: v + 1)) == 2


def test_invoke_chains_sync_and_async():
  assert _invoke(lambda: 1, lambda v: v + 1) == 2
  assert run(_invoke(lambda: later(1), lambda v: v + 1)) == 2


def test_catch_routes_both_failure_kinds():
  def sync_fail():
    raise ValueError("s")

  assert _catch(sync_fail, lambda e: f"recovered {e}") == "recovered s"
  assert run(_catch(lambda: fail_later(ValueError("a")), lambda e: f"recovered {e}")) == "recovered a"
  assert _catch(lambda: 5, lambda e: None) == 5


def test_finally_rethrows_keeps_outcome():
  calls = []

  def finalizer(thrown, value):
    calls.append(thrown)
    return _rethrow(thrown, value)

  assert _finally_rethrows(lambda: 1, finalizer) == 1
  with pytest.raises(ValueError):
    run(_finally_rethrows(lambda: fail_later(ValueError()), finalizer))
  assert calls == [False, True]


def test_finally_outcome_replaces_body():
  def sync_fail():
    raise ValueError()

  assert _finally(sync_fail, lambda: "final") == "final"
  assert run(_finally(lambda: later(1), lambda: "final")) == "final"


def test_for_sync_loop_returns_last_body_result():
  state = {"i": 0}

  def test():
    return state["i"] < 3

  def update():
    state["i"] += 1

  assert _for(test, update, lambda: state["i"] * 10) == 20
  assert state["i"] == 3


def test_for_switches_to_pact_on_first_pending_value():
  state = {"i": 0}
  seen = []

  def body():
    seen.append(state["i"])
    state["i"] += 1
    return later(state["i"])

  outcome = _for(lambda: state["i"] < 3, None, body)
  assert isinstance(outcome, Pact)
  assert run(outcome) == 3
  assert seen == [0, 1, 2]


def test_do_runs_body_first():
  seen = []
  _do(lambda: seen.append("body"), lambda: False)
  assert seen == ["body"]


def test_for_to_and_check():
  seen = []
  assert _for_to(range(5), seen.append, lambda: len(seen) >= 2) is None
  assert seen == [0, 1]


def test_for_in_and_for_own_snapshot_keys():
  data = {"a": 1, "b": 2}
  keys = []

  def body(key):
    keys.append(key)
    data["c"] = 3

  _for_in(data, body)
  assert keys == ["a", "b"]

  class Obj:
    def __init__(self):
      self.x = 1
      self.y = 2

  names = []
  _for_own(Obj(), names.append)
  assert names == ["x", "y"]


class _Tracked:
  def __init__(self, items):
    self.items = list(items)
    self.closed = 0

  def __iter__(self):
    return self

  def __next__(self):
    if not self.items:
      raise StopIteration
    return self.items.pop(0)

  def close(self):
    self.closed += 1


def test_for_of_closes_iterator_once_on_early_exit():
  tracked = _Tracked([1, 2, 3])
  seen = []
  _for_of(tracked, seen.append, lambda: len(seen) == 1)
  assert seen == [1]
  assert tracked.closed == 1


def test_for_of_does_not_close_exhausted_iterator():
  tracked = _Tracked([1, 2])
  assert run(_for_of(tracked, lambda item: later(item * 2))) == 4
  assert tracked.closed == 0


def test_for_of_closes_on_async_failure():
  tracked = _Tracked([1, 2])
  with pytest.raises(ValueError):
    run(_for_of(tracked, lambda item: fail_later(ValueError())))
  assert tracked.closed == 1


def test_for_await_of_iterates_async_generator():
  async def numbers():
    for n in range(3):
      yield await later(n)

  seen = []
  outcome = _for_await_of(numbers(), seen.append)
  assert isinstance(outcome, Pact)
  run(outcome)
  assert seen == [0, 1, 2]


def test_for_await_of_closes_on_break():
  closed = []

  async def numbers():
    try:
      for n in range(10):
        yield n
    finally:
      closed.append(True)

  seen = []
  run(_for_await_of(numbers(), seen.append, lambda: len(seen) == 2))
  assert seen == [0, 1]
  assert closed == [True]


def test_switch_dispatch_default_and_fallthrough():
  seen = []
  cases = [
    (lambda: 1, lambda: seen.append("one")),
    (lambda: 2, lambda: seen.append("two"), lambda: False),
    (None, lambda: seen.append("default")),
  ]
  _switch(2, cases)
  assert seen == ["two", "default"]

  seen.clear()
  _switch(9, cases)
  assert seen == ["default"]

  seen.clear()
  assert _switch(9, cases[:2]) is None
  assert seen == []


def test_switch_with_pending_test():
  seen = []
  outcome = _switch(2, [(lambda: later(1), lambda: seen.append(1)), (lambda: later(2), lambda: later("two"))])
  assert run(outcome) == "two"
  assert seen == []


def test_ignored_variants_drop_values():
  assert _empty(1, 2) is None
  assert _continue_ignored(5) is None
  assert run(_continue_ignored(later(5))) is None
  assert _invoke_ignored(lambda: 7) is None
  assert run(_invoke_ignored(lambda: later(7))) is None
  assert run(_call_ignored(lambda: later(8))) is None


def test_call_ignored_rejects_sync_errors():
  def explode():
    raise KeyError("gone")

  with pytest.raises(KeyError):
    run(_call_ignored(explode))


def test_for_values_iterates_a_display():
  seen = []

  def body(value):
    seen.append(value)
    return later(value) if value == 2 else None

  run(_for_values([1, 2, 3], body))
  assert seen == [1, 2, 3]


def test_async_generator_serves_sent_values():
  def entry(generator):
    return generator._yield("first").then(lambda sent: generator._yield(sent * 2))

  generator = _AsyncGenerator(entry)
  assert generator.__aiter__() is generator
  assert run(generator.__anext__()) == "first"
  assert run(generator.asend(21)) == 42
  with pytest.raises(StopAsyncIteration):
    run(generator.asend(None))
  with pytest.raises(StopAsyncIteration):
    run(generator.__anext__())


def test_async_generator_rejects_value_sent_before_start():
  generator = _AsyncGenerator(lambda g: g._yield(1))
  with pytest.raises(TypeError, match="just-started"):
    run(generator.asend("early"))
  assert run(generator.__anext__()) == 1


def test_async_generator_queues_requests():
  def entry(generator):
    return later("a").then(generator._yield).then(lambda _: generator._yield("b"))

  generator = _AsyncGenerator(entry)
  first = generator.__anext__()
  second = generator.__anext__()
  assert run(second) == "b"
  assert first.result() == "a"


def test_async_generator_throw_reaches_the_pending_yield():
  seen = []

  def entry(generator):
    def recover(error):
      seen.append(error.args[0])
      return generator._yield("recovered")

    return generator._yield(1).then(None, recover)

  generator = _AsyncGenerator(entry)
  run(generator.__anext__())
  assert run(generator.athrow(KeyError("k"))) == "recovered"
  assert seen == ["k"]


def test_async_generator_throw_before_start_closes_it():
  started = []
  generator = _AsyncGenerator(lambda g: started.append(True))
  with pytest.raises(KeyError):
    run(generator.athrow(KeyError))
  with pytest.raises(StopAsyncIteration):
    run(generator.__anext__())
  assert started == []


def test_async_generator_close_unwinds_the_body():
  cleanup = []

  def entry(generator):
    def closing(error):
      cleanup.append(type(error).__name__)
      raise error

    return generator._yield(1).then(None, closing)

  generator = _AsyncGenerator(entry)
  assert run(generator.__anext__()) == 1
  assert run(generator.aclose()) is None
  assert cleanup == ["GeneratorExit"]
  assert run(generator.aclose()) is None
  with pytest.raises(StopAsyncIteration):
    run(generator.__anext__())


def test_async_generator_must_not_yield_while_closing():
  generator = _AsyncGenerator(lambda g: g._yield(1).then(None, lambda error: g._yield(2)))
  run(generator.__anext__())
  with pytest.raises(RuntimeError, match="ignored GeneratorExit"):
    run(generator.aclose())


def test_async_generator_stop_iteration_from_body_is_an_error():
  generator = _AsyncGenerator(lambda g: fail_later(StopAsyncIteration()))
  with pytest.raises(RuntimeError, match="raised StopAsyncIteration"):
    run(generator.__anext__())


def test_for_await_of_drives_a_lowered_generator():
  def entry(generator):
    return generator._yield(1).then(lambda _: generator._yield(2)).then(lambda _: generator._yield(3))

  seen = []
  run(_for_await_of(_AsyncGenerator(entry), seen.append, lambda: len(seen) == 2))
  assert seen == [1, 2]
