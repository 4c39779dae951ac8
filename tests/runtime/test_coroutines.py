"""
Tests for bridging native awaitables into deferred values.
"""

import pytest

from unawait.runtime import Pact, Promise, PromiseState, awaitable_to_promise, get_queue, run, spawn
from conftest import fail_later, later


def test_spawn_runs_until_first_suspension():
  steps = []

  async def work():
    steps.append("before")
    value = await later(5)
    steps.append("after")
    return value + 1

  promise = spawn(work())
  assert steps == ["before"]
  assert promise.state is PromiseState.PENDING
  get_queue().drain()
  assert steps == ["before", "after"]
  assert promise.result() == 6


def test_spawn_propagates_rejection_into_coroutine():
  async def work():
    try:
      await fail_later(ValueError("nope"))
    except ValueError as e:
      return f"caught {e}"

  assert run(spawn(work())) == "caught nope"


def test_spawn_does_not_adopt_returned_promise():
  inner = Promise.resolve(1)

  async def work():
    return inner

  assert run(spawn(work())) is inner


class _Custom:
  def __await__(self):
    yield None
    return "custom"


def test_spawn_custom_awaitable_yielding_none():
  assert run(_Custom()) == "custom"


def test_spawn_rejects_unknown_yield():
  class _Odd:
    def __await__(self):
      yield 42

  with pytest.raises(RuntimeError, match="Unsupported value"):
    run(_Odd())


def test_awaitable_to_promise():
  pact = Pact()
  assert awaitable_to_promise(pact) is pact
  promise = awaitable_to_promise(3)
  assert promise.result() == 3


def test_run_plain_value_and_unsettled():
  assert run(9) == 9
  with pytest.raises(RuntimeError, match="did not settle"):
    run(Promise())


def test_run_raises_rejection():
  with pytest.raises(KeyError):
    run(fail_later(KeyError("k")))
