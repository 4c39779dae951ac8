"""
Runtime support for lowered code.

Exposes the deferred-value types and the host-side entry points. The
combinators referenced by generated code live in `unawait.runtime.helpers`.
"""

from unawait.runtime.coroutines import awaitable_to_promise, run, spawn
from unawait.runtime.promise import Pact, Promise, PromiseState, is_thenable, settle
from unawait.runtime.scheduler import MicrotaskQueue, get_queue, reset_queue, set_queue

__all__ = [
  "MicrotaskQueue",
  "Pact",
  "Promise",
  "PromiseState",
  "awaitable_to_promise",
  "get_queue",
  "is_thenable",
  "reset_queue",
  "run",
  "set_queue",
  "settle",
  "spawn",
]
