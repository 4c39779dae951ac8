"""
Tests for Promise and Pact semantics.
"""

import pytest

from unawait.runtime import Pact, Promise, PromiseState, get_queue, is_thenable, settle


def test_then_never_runs_synchronously():
  seen = []
  promise = Promise.resolve(1)
  promise.then(seen.append)
  assert seen == []
  get_queue().drain()
  assert seen == [1]


def test_resolve_returns_same_promise():
  promise = Promise.resolve(3)
  assert Promise.resolve(promise) is promise


def test_chained_values_and_errors():
  seen = []

  def explode(value):
    raise ValueError(f"bad {value}")

  Promise.resolve(2).then(lambda v: v * 10).then(explode).then(seen.append).catch(
    lambda error: seen.append(str(error))
  )
  get_queue().drain()
  assert seen == ["bad 20"]


def test_adopts_pending_promise():
  inner = Promise()
  outer = Promise()
  outer._resolve(inner)
  assert outer.state is PromiseState.PENDING

  inner._resolve("done")
  get_queue().drain()
  assert outer.result() == "done"


def test_self_resolution_is_rejected():
  promise = Promise()
  promise._resolve(promise)
  assert promise.state is PromiseState.REJECTED
  with pytest.raises(TypeError):
    promise.result()


def test_result_of_pending_promise_raises():
  with pytest.raises(RuntimeError, match="still pending"):
    Promise().result()


def test_executor_exception_rejects():
  def executor(resolve, reject):
    raise KeyError("k")

  promise = Promise(executor)
  assert promise.state is PromiseState.REJECTED
  with pytest.raises(KeyError):
    promise.result()


def test_settles_only_once():
  promise = Promise()
  promise._resolve(1)
  promise._reject(ValueError())
  assert promise.result() == 1


def test_pact_then_runs_synchronously_when_settled():
  pact = Pact()
  settle(pact, PromiseState.FULFILLED, 4)
  derived = pact.then(lambda v: v + 1)
  assert derived.settled
  assert derived.value == 5


def test_pact_observer_runs_on_settlement():
  pact = Pact()
  derived = pact.then(lambda v: v * 2)
  assert not derived.settled
  settle(pact, PromiseState.FULFILLED, 21)
  assert derived.value == 42


def test_pact_rejection_without_handler_returns_self():
  pact = Pact()
  error = ValueError("x")
  settle(pact, PromiseState.REJECTED, error)
  assert pact.then(lambda v: v) is pact
  assert pact.state is PromiseState.REJECTED


def test_pact_adopts_pending_pact():
  inner = Pact()
  outer = Pact()
  settle(outer, PromiseState.FULFILLED, inner)
  assert not outer.settled
  settle(inner, PromiseState.REJECTED, KeyError("k"))
  assert outer.state is PromiseState.REJECTED


def test_pact_adopts_promise():
  outer = Pact()
  settle(outer, PromiseState.FULFILLED, Promise.resolve("p"))
  assert not outer.settled
  get_queue().drain()
  assert outer.value == "p"


def test_promise_adopts_pact():
  pact = Pact()
  promise = Promise.resolve(pact)
  settle(pact, PromiseState.FULFILLED, 7)
  get_queue().drain()
  assert promise.result() == 7


def test_is_thenable():
  assert is_thenable(Promise())
  assert is_thenable(Pact())
  assert not is_thenable(3)
