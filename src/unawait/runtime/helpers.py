"""
Runtime Combinators for Lowered Code.

Every function here is referenced by code produced by the lowering engine,
either through `from unawait.runtime.helpers import ...` or by being copied
into the output module (inline mode). Top-level definitions must therefore
only depend on each other and on the imports of this module.

Conventions:
1.  Closures passed in (`body`, `test`, `then`, ...) are called at most as
    often as the matching native construct would evaluate them.
2.  Exceptions raised synchronously inside `_call`, `_catch` and the
    `_finally*` helpers are turned into rejections or routed to handlers.
3.  Continuations attached to a pending value only run from its settlement.
4.  Loop and switch helpers stay synchronous until the first pending value,
    then switch to a `Pact`.
"""

import functools

from unawait.runtime.coroutines import awaitable_to_promise
from unawait.runtime.promise import CATCHABLE, Pact, Promise, PromiseState, is_thenable, settle
from unawait.runtime.scheduler import get_queue

_TEST = "test"
_TESTED = "tested"
_BODY = "body"
_BODIED = "bodied"
_EXHAUSTED = object()
_NO_VALUE = object()


def _async(func):
  """Decorates a lowered function so that it always returns a `Promise`."""

  @functools.wraps(func)
  def wrapper(*args, **kwargs):
    try:
      return Promise.resolve(func(*args, **kwargs))
    except CATCHABLE as error:
      return Promise.reject(error)

  return wrapper


def _empty(*_args):
  pass


def _resolve(value=None):
  """Wraps a return value of a lowered function; deferred values are adopted."""
  return Promise.resolve(value)


def _await(value=None, then=None, direct=False):
  """Awaits `value` and passes the result to `then`; `direct` skips the suspension."""
  if direct:
    return then(value) if then else value
  if not is_thenable(value):
    value = awaitable_to_promise(value)
  return value.then(then) if then else value


def _await_ignored(value=None, direct=False):
  if not direct:
    if is_thenable(value):
      return value.then(_empty)
    return awaitable_to_promise(value).then(_empty)


def _continue(value, then):
  return value.then(then) if is_thenable(value) else then(value)


def _continue_ignored(value):
  if is_thenable(value):
    return value.then(_empty)


def _call(body, then=None, direct=False):
  """Calls `body`, converting a synchronous exception into a rejection."""
  if direct:
    return then(body()) if then else body()
  try:
    result = awaitable_to_promise(body())
  except CATCHABLE as error:
    return Promise.reject(error)
  return result.then(then) if then else result


def _call_ignored(body, direct=False):
  return _call(body, _empty, direct)


def _invoke(body, then):
  result = body()
  if is_thenable(result):
    return result.then(then)
  return then(result)


def _invoke_ignored(body):
  result = body()
  if is_thenable(result):
    return result.then(_empty)


def _catch(body, recover):
  """Runs `body`, routing synchronous and asynchronous failures to `recover`."""
  try:
    result = body()
  except CATCHABLE as error:
    return recover(error)
  if is_thenable(result):
    return result.then(None, recover)
  return result


def _finally_rethrows(body, finalizer):
  """
  Runs `finalizer(thrown, value)` after `body` however it completed.

  The finalizer is expected to end with `_rethrow(thrown, value)`.
  """
  try:
    result = body()
  except CATCHABLE as error:
    return finalizer(True, error)
  if is_thenable(result):
    return result.then(functools.partial(finalizer, False), functools.partial(finalizer, True))
  return finalizer(False, result)


def _finally(body, finalizer):
  """Runs the zero-argument `finalizer` after `body`; its outcome replaces body's."""
  try:
    result = body()
  except CATCHABLE:
    return finalizer()
  if is_thenable(result):
    return result.then(lambda _value: finalizer(), lambda _error: finalizer())
  return finalizer()


def _rethrow(thrown, value):
  if thrown:
    raise value
  return value


def _unwrap(value):
  if isinstance(value, Pact) and value.settled:
    if value.state is PromiseState.REJECTED:
      raise value.value
    return value.value
  return value


def _drive(step, stage, value):
  """
  Runs a step machine synchronously until it needs a pending value.

  `step(stage, value)` returns `(None, result)` once finished, or
  `(pending, next_stage)` to be resumed with the settled value of `pending`.
  Exceptions before the first suspension propagate to the caller.
  """
  pending, outcome = step(stage, value)
  if pending is None:
    return outcome
  pact = Pact()
  reject = functools.partial(settle, pact, PromiseState.REJECTED)

  def resume(next_stage, resolved):
    try:
      waiting, result = step(next_stage, resolved)
    except CATCHABLE as error:
      reject(error)
      return
    if waiting is None:
      settle(pact, PromiseState.FULFILLED, result)
    else:
      waiting.then(functools.partial(resume, result), reject)

  pending.then(functools.partial(resume, outcome), reject)
  return pact


def _loop(test, update, body, stage):
  result = None

  def step(stage, value):
    nonlocal result
    while True:
      if stage is _TEST:
        value = _unwrap(test())
        if is_thenable(value):
          return value, _TESTED
        stage = _TESTED
      if stage is _TESTED:
        if not value:
          return None, result
        stage = _BODY
      if stage is _BODY:
        value = _unwrap(body())
        if is_thenable(value):
          return value, _BODIED
        stage = _BODIED
      result = value
      if update is not None:
        value = _unwrap(update())
        if is_thenable(value):
          return value, _TEST
      stage = _TEST

  return _drive(step, stage, None)


def _for(test, update, body):
  """Runs `while test(): body(); update()` where any part may suspend."""
  return _loop(test, update, body, _TEST)


def _do(body, test):
  """Runs `body` at least once, then again while `test()` is true."""
  return _loop(test, None, body, _BODY)


class _Cursor:
  __slots__ = ("iterator", "exhausted", "closed")

  def __init__(self, iterable):
    self.iterator = iter(iterable)
    self.exhausted = False
    self.closed = False

  def advance(self):
    try:
      return next(self.iterator)
    except StopIteration:
      self.exhausted = True
      return _EXHAUSTED

  def close(self):
    if self.exhausted or self.closed:
      return
    self.closed = True
    close = getattr(self.iterator, "close", None)
    if close is not None:
      close()


def _iterate(cursor, body, check):
  result = None

  def step(stage, value):
    nonlocal result
    if stage is _BODIED:
      result = value
    while check is None or not check():
      item = cursor.advance()
      if item is _EXHAUSTED:
        break
      value = _unwrap(body(item))
      if is_thenable(value):
        return value, _BODIED
      result = value
    return None, result

  return _drive(step, _TEST, None)


def _for_to(bounds, body, check=None):
  """Iterates a `range`, passing each index to `body`."""
  return _iterate(_Cursor(bounds), body, check)


def _for_values(values, body, check=None):
  return _iterate(_Cursor(values), body, check)


def _for_in(target, body, check=None):
  """Iterates a snapshot of the mapping keys of `target`."""
  return _iterate(_Cursor(list(target.keys())), body, check)


def _for_own(target, body, check=None):
  """Iterates a snapshot of the instance attribute names of `target`."""
  return _iterate(_Cursor(list(vars(target))), body, check)


def _for_of(target, body, check=None):
  """
  Iterates any iterable. Leaving early, through `check` or an exception,
  closes the iterator exactly once.
  """
  cursor = _Cursor(target)
  try:
    outcome = _iterate(cursor, body, check)
  except CATCHABLE:
    cursor.close()
    raise
  if is_thenable(outcome):

    def finish(value):
      cursor.close()
      return value

    def fail(error):
      cursor.close()
      raise error

    return outcome.then(finish, fail)
  cursor.close()
  return outcome


def _for_await_of(target, body, check=None):
  """Iterates an asynchronous iterable. Always returns a `Pact`."""
  iterator = type(target).__aiter__(target)
  pact = Pact()
  reject = functools.partial(settle, pact, PromiseState.REJECTED)
  closed = False

  def close_then(callback, on_error):
    nonlocal closed
    aclose = getattr(iterator, "aclose", None)
    if closed or aclose is None:
      callback(None)
      return
    closed = True
    awaitable_to_promise(aclose()).then(callback, on_error)

  def fail(reason):
    def rethrow(_value):
      reject(reason)

    try:
      close_then(rethrow, reject)
    except CATCHABLE as error:
      reject(error)

  def resume_after_body(result=None):
    try:
      if check is not None and check():
        close_then(lambda _value: settle(pact, PromiseState.FULFILLED, result), reject)
        return
      pending = awaitable_to_promise(type(iterator).__anext__(iterator))
    except CATCHABLE as error:
      fail(error)
      return
    pending.then(resume_after_next, after_next_failed)

  def after_next_failed(error):
    if isinstance(error, StopAsyncIteration):
      settle(pact, PromiseState.FULFILLED, None)
    else:
      reject(error)

  def resume_after_next(value):
    try:
      outcome = body(value)
    except CATCHABLE as error:
      fail(error)
      return
    awaitable_to_promise(outcome).then(resume_after_body, fail)

  resume_after_body()
  return pact


def _switch(discriminant, cases):
  """
  Dispatches to the first case whose test returns a value equal to
  `discriminant`, or to the default case (test `None`) when none does.

  Cases are `(test, body)` or `(test, body, fallthrough)` tuples. A case
  with a `fallthrough` check continues into the next body unless the check
  returns true. A `None` body falls through to the next case.
  """
  cases = [tuple(case) + (None,) * (3 - len(case)) for case in cases]
  index = 0
  dispatch = -1
  result = None

  def search(value):
    nonlocal index, dispatch
    while index < len(cases):
      test = cases[index][0]
      if test is None:
        dispatch = index
      else:
        outcome = _unwrap(test()) if value is _NO_VALUE else value
        value = _NO_VALUE
        if is_thenable(outcome):
          return outcome
        if outcome == discriminant:
          dispatch = index
          return None
      index += 1
    return None

  def run_bodies(value):
    nonlocal dispatch, result
    while True:
      if value is _NO_VALUE:
        while cases[dispatch][1] is None:
          dispatch += 1
        value = _unwrap(cases[dispatch][1]())
        if is_thenable(value):
          return value
      result = value
      value = _NO_VALUE
      fallthrough = cases[dispatch][2]
      if fallthrough is None or fallthrough():
        return None
      dispatch += 1

  def step(stage, value):
    if stage is _TEST:
      pending = search(value)
      if pending is not None:
        return pending, _TEST
      if dispatch == -1:
        return None, result
      value = _NO_VALUE
    pending = run_bodies(value)
    if pending is not None:
      return pending, _BODIED
    return None, result

  return _drive(step, _TEST, _NO_VALUE)


class _AsyncGenerator:
  """
  Asynchronous generator driven by a lowered body.

  `entry(generator)` runs the body. Every `generator._yield(value)` hands
  `value` to the request being served and returns a `Pact` that the next
  request settles: with the sent value, with the thrown exception, or with
  `GeneratorExit` when closing. Requests made while the body runs are queued
  and served in order.
  """

  def __init__(self, entry):
    self._entry = entry
    self._pact = None
    self._request = None
    self._requests = []
    self._closing = False
    self._finished = False

  def __aiter__(self):
    return self

  def __anext__(self):
    return self._enqueue("send", None)

  def asend(self, value):
    return self._enqueue("send", value)

  def athrow(self, error, *_args):
    if isinstance(error, type):
      error = error()
    return self._enqueue("throw", error)

  def aclose(self):
    return self._enqueue("close", None)

  def _enqueue(self, kind, value):
    promise = Promise()
    self._requests.append((kind, value, promise))
    if self._request is None:
      self._serve_next()
    return promise

  def _serve_next(self):
    while self._requests and self._request is None:
      kind, value, promise = self._requests.pop(0)
      self._request = promise
      self._serve(kind, value)

  def _answer(self, state, value):
    request, self._request = self._request, None
    if state is PromiseState.FULFILLED:
      request._fulfill(value)
    else:
      request._reject(value)

  def _serve(self, kind, value):
    if self._finished or (self._pact is None and kind != "send"):
      self._finished = True
      if kind == "send":
        self._answer(PromiseState.REJECTED, StopAsyncIteration())
      elif kind == "throw":
        self._answer(PromiseState.REJECTED, value)
      else:
        self._answer(PromiseState.FULFILLED, None)
      return
    pact, self._pact = self._pact, None
    if pact is None:
      if value is not None:
        self._answer(PromiseState.REJECTED, TypeError("can't send non-None value to a just-started async generator"))
        return
      entry, self._entry = self._entry, None
      _call(functools.partial(entry, self)).then(self._returned, self._raised)
    elif kind == "send":
      settle(pact, PromiseState.FULFILLED, value)
    elif kind == "throw":
      settle(pact, PromiseState.REJECTED, value)
    else:
      self._closing = True
      settle(pact, PromiseState.REJECTED, GeneratorExit())

  def _yield(self, value):
    if self._closing:
      self._finish(PromiseState.REJECTED, RuntimeError("async generator ignored GeneratorExit"))
      return Pact()
    self._pact = Pact()
    pact = self._pact
    self._answer(PromiseState.FULFILLED, value)
    if self._requests:
      get_queue().enqueue(self._serve_next)
    return pact

  def _returned(self, _value):
    if self._closing:
      self._finish(PromiseState.FULFILLED, None)
    else:
      self._finish(PromiseState.REJECTED, StopAsyncIteration())

  def _raised(self, error):
    if self._closing and isinstance(error, GeneratorExit):
      self._finish(PromiseState.FULFILLED, None)
    elif isinstance(error, StopAsyncIteration):
      self._finish(PromiseState.REJECTED, RuntimeError("async generator raised StopAsyncIteration"))
    else:
      self._finish(PromiseState.REJECTED, error)

  def _finish(self, state, value):
    self._finished = True
    self._closing = False
    self._pact = None
    if self._request is not None:
      self._answer(state, value)
    self._serve_next()
