"""
Deferred Values.

Two deferred-value types back the lowered code:

1.  **Promise**: Promise/A+ style value. Reactions registered with `then`
    always run asynchronously as microtasks (see `unawait.runtime.scheduler`).
    Resolving a promise with another `Promise` or `Pact` adopts its state.
2.  **Pact**: Lightweight synchronous deferred value used by the loop and
    switch combinators. It has a single observer which is invoked the moment
    the pact settles, and `then` on an already settled pact runs the callback
    immediately.

Both types are awaitable from native coroutines driven by
`unawait.runtime.coroutines.spawn`.
"""

import functools
from enum import Enum
from typing import Any, Callable, List, Optional

from unawait.runtime.scheduler import get_queue

# failures routed to rejections; `GeneratorExit` unwinds a closing async generator
CATCHABLE = (Exception, GeneratorExit)


class PromiseState(str, Enum):
  """Settlement state of a deferred value."""

  PENDING = "pending"
  FULFILLED = "fulfilled"
  REJECTED = "rejected"


class Promise:
  """
  Asynchronous deferred value.

  Attributes:
      _state (PromiseState): Current state.
      _value (Any): Fulfillment value or rejection reason once settled.
      _reactions (List[Callable]): Callbacks waiting for settlement.
      _locked (bool): True once a resolution (possibly adoption) was chosen.
  """

  def __init__(self, executor: Optional[Callable[[Callable, Callable], Any]] = None) -> None:
    self._state = PromiseState.PENDING
    self._value: Any = None
    self._reactions: List[Callable[[], None]] = []
    self._locked = False
    if executor is not None:
      try:
        executor(self._resolve, self._reject)
      except CATCHABLE as error:
        self._reject(error)

  @classmethod
  def resolve(cls, value: Any = None) -> "Promise":
    """
    Wraps a value into a promise, adopting deferred values.

    Args:
        value: Plain value, `Promise` or `Pact`.

    Returns:
        Promise: `value` itself when it already is a Promise.
    """
    if isinstance(value, Promise):
      return value
    promise = cls()
    promise._resolve(value)
    return promise

  @classmethod
  def reject(cls, error: BaseException) -> "Promise":
    """Creates a promise rejected with `error`."""
    promise = cls()
    promise._reject(error)
    return promise

  @property
  def state(self) -> PromiseState:
    return self._state

  def result(self) -> Any:
    """
    Synchronously reads a settled promise.

    Returns:
        Any: The fulfillment value.

    Raises:
        RuntimeError: If the promise is still pending.
        BaseException: The rejection reason.
    """
    if self._state is PromiseState.PENDING:
      raise RuntimeError("Promise is still pending")
    if self._state is PromiseState.REJECTED:
      raise self._value
    return self._value

  def then(
    self,
    on_fulfilled: Optional[Callable[[Any], Any]] = None,
    on_rejected: Optional[Callable[[Any], Any]] = None,
  ) -> "Promise":
    """
    Registers settlement callbacks.

    The callbacks run as microtasks. The returned promise resolves with the
    callback outcome, or rejects with the exception it raised.

    Args:
        on_fulfilled: Called with the fulfillment value.
        on_rejected: Called with the rejection reason.

    Returns:
        Promise: Promise for the callback outcome.
    """
    derived = Promise()

    def react() -> None:
      callback = on_fulfilled if self._state is PromiseState.FULFILLED else on_rejected
      if callback is None:
        if self._state is PromiseState.FULFILLED:
          derived._resolve(self._value)
        else:
          derived._reject(self._value)
        return
      try:
        outcome = callback(self._value)
      except CATCHABLE as error:
        derived._reject(error)
        return
      derived._resolve(outcome)

    if self._state is PromiseState.PENDING:
      self._reactions.append(react)
    else:
      get_queue().enqueue(react)
    return derived

  def catch(self, on_rejected: Callable[[Any], Any]) -> "Promise":
    return self.then(None, on_rejected)

  def _resolve(self, value: Any) -> None:
    if self._locked or self._state is not PromiseState.PENDING:
      return
    self._locked = True
    if value is self:
      self._settle(PromiseState.REJECTED, TypeError("A promise cannot be resolved with itself"))
      return
    if isinstance(value, (Promise, Pact)):
      value.then(
        functools.partial(self._settle, PromiseState.FULFILLED),
        functools.partial(self._settle, PromiseState.REJECTED),
      )
      return
    self._settle(PromiseState.FULFILLED, value)

  def _fulfill(self, value: Any) -> None:
    """Fulfills with `value` as is, without adopting deferred values."""
    if self._locked or self._state is not PromiseState.PENDING:
      return
    self._locked = True
    self._settle(PromiseState.FULFILLED, value)

  def _reject(self, error: Any) -> None:
    if self._locked or self._state is not PromiseState.PENDING:
      return
    self._locked = True
    self._settle(PromiseState.REJECTED, error)

  def _settle(self, state: PromiseState, value: Any) -> None:
    if self._state is not PromiseState.PENDING:
      return
    self._state = state
    self._value = value
    reactions, self._reactions = self._reactions, []
    queue = get_queue()
    for react in reactions:
      queue.enqueue(react)

  def __await__(self):
    if self._state is PromiseState.PENDING:
      yield self
    return self.result()

  def __repr__(self) -> str:
    if self._state is PromiseState.PENDING:
      return "<Promise pending>"
    return f"<Promise {self._state.value}: {self._value!r}>"


class Pact:
  """
  Synchronous deferred value with a single observer.

  A pact starts pending and is settled through `settle`. Only one pending
  `then` may be attached at a time, which is all the combinators need.
  """

  __slots__ = ("_state", "_value", "_observer")

  def __init__(self) -> None:
    self._state = PromiseState.PENDING
    self._value: Any = None
    self._observer: Optional[Callable[["Pact"], None]] = None

  @property
  def state(self) -> PromiseState:
    return self._state

  @property
  def value(self) -> Any:
    return self._value

  @property
  def settled(self) -> bool:
    return self._state is not PromiseState.PENDING

  def then(
    self,
    on_fulfilled: Optional[Callable[[Any], Any]] = None,
    on_rejected: Optional[Callable[[Any], Any]] = None,
  ) -> "Pact":
    """
    Chains callbacks, synchronously when the pact is already settled.

    Returns:
        Pact: Pact for the callback outcome, or `self` when there is no
        callback for the settled state.
    """
    derived = Pact()
    if self._state is not PromiseState.PENDING:
      callback = on_fulfilled if self._state is PromiseState.FULFILLED else on_rejected
      if callback is None:
        return self
      try:
        settle(derived, PromiseState.FULFILLED, callback(self._value))
      except CATCHABLE as error:
        settle(derived, PromiseState.REJECTED, error)
      return derived

    def observe(pact: "Pact") -> None:
      try:
        value = pact._value
        if pact._state is PromiseState.FULFILLED:
          settle(derived, PromiseState.FULFILLED, on_fulfilled(value) if on_fulfilled else value)
        elif on_rejected is not None:
          settle(derived, PromiseState.FULFILLED, on_rejected(value))
        else:
          settle(derived, PromiseState.REJECTED, value)
      except CATCHABLE as error:
        settle(derived, PromiseState.REJECTED, error)

    self._observer = observe
    return derived

  def __await__(self):
    if self._state is PromiseState.PENDING:
      yield self
    if self._state is PromiseState.REJECTED:
      raise self._value
    return self._value

  def __repr__(self) -> str:
    if self._state is PromiseState.PENDING:
      return "<Pact pending>"
    return f"<Pact {self._state.value}: {self._value!r}>"


def settle(pact: Pact, state: PromiseState, value: Any) -> None:
  """
  Settles a pact, unwrapping deferred values first.

  A settled `Pact` value contributes its own state when fulfilling; a pending
  one is observed and the settlement is retried once it settles. A `Promise`
  value is adopted through `then`.

  Args:
      pact: The pact to settle. Ignored when already settled.
      state: Requested state.
      value: Value or reason.
  """
  if pact._state is not PromiseState.PENDING:
    return
  if isinstance(value, Pact):
    if value._state is PromiseState.PENDING:
      value._observer = functools.partial(settle, pact, state)
      return
    if state is PromiseState.FULFILLED:
      state = value._state
    value = value._value
  if isinstance(value, Promise):
    value.then(
      functools.partial(settle, pact, state),
      functools.partial(settle, pact, PromiseState.REJECTED),
    )
    return
  pact._state = state
  pact._value = value
  observer = pact._observer
  if observer is not None:
    observer(pact)


def is_thenable(value: Any) -> bool:
  """True for the deferred values the runtime knows how to chain."""
  return isinstance(value, (Promise, Pact))
