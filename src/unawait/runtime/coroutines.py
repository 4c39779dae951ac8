"""
Bridging Native Awaitables.

Lowered functions may await values produced by code that was not lowered:
native coroutine objects, objects implementing `__await__`, or plain values.
This module converts them into `Promise` objects.

`spawn` is a minimal coroutine driver. The coroutine is stepped synchronously
until its first suspension, like the body of a native async function up to its
first await. A suspension must yield a `Promise`/`Pact` (resumed once it
settles) or `None` (resumed on the next microtask).
"""

import inspect
from typing import Any, Awaitable, Generator, Optional

from unawait.runtime.promise import CATCHABLE, Promise, PromiseState, is_thenable
from unawait.runtime.scheduler import get_queue


def _iterate_await(awaitable: Awaitable[Any]) -> Generator[Any, Any, Any]:
  return (yield from awaitable.__await__())


def spawn(awaitable: Awaitable[Any]) -> Promise:
  """
  Starts driving an awaitable and returns a promise for its outcome.

  A coroutine returning a deferred value fulfills with that object; it is not
  adopted.

  Args:
      awaitable: Coroutine object or any object with `__await__`.

  Returns:
      Promise: Settles with the return value or the raised exception.
  """
  iterator = awaitable if inspect.iscoroutine(awaitable) else _iterate_await(awaitable)
  promise = Promise()

  def step(error: Optional[BaseException] = None) -> None:
    try:
      if error is None:
        yielded = iterator.send(None)
      else:
        yielded = iterator.throw(error)
    except StopIteration as stop:
      promise._fulfill(stop.value)
      return
    except CATCHABLE as failure:
      promise._reject(failure)
      return

    if is_thenable(yielded):
      yielded.then(_resume, _resume)
    elif yielded is None:
      get_queue().enqueue(step)
    else:
      step(RuntimeError(f"Unsupported value yielded by awaitable: {yielded!r}"))

  def _resume(_outcome: Any) -> None:
    step()

  step()
  return promise


def awaitable_to_promise(value: Any) -> Any:
  """
  Normalizes a value so that it can be chained with `then`.

  Returns:
      `Promise`/`Pact` values unchanged, a spawned promise for other
      awaitables, and a fulfilled promise for plain values.
  """
  if is_thenable(value):
    return value
  if inspect.isawaitable(value):
    return spawn(value)
  return Promise.resolve(value)


def run(awaitable: Any) -> Any:
  """
  Drains the microtask queue until `awaitable` settles and returns its value.

  Args:
      awaitable: A deferred value, native awaitable or plain value.

  Returns:
      Any: The fulfillment value.

  Raises:
      RuntimeError: If the value is still pending once the queue is empty.
      BaseException: The rejection reason.
  """
  promise = Promise.resolve(awaitable_to_promise(awaitable))
  get_queue().drain()
  if promise.state is PromiseState.PENDING:
    raise RuntimeError("Deferred value did not settle")
  return promise.result()
