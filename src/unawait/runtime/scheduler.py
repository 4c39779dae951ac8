"""
Microtask Scheduling.

Settlement callbacks of a `Promise` never run synchronously inside `then`.
They are queued on a `MicrotaskQueue` and executed in FIFO order when the
queue is drained. Lowered code never drains the queue itself; the host
(an event loop integration, `unawait.runtime.run`, or a test) does.

The module keeps one default queue. Tests swap it with `set_queue` or
`reset_queue` to get an isolated scheduler.
"""

import logging
from collections import deque
from typing import Any, Callable, Deque, Tuple

logger = logging.getLogger(__name__)

Task = Tuple[Callable[..., Any], Tuple[Any, ...]]


class MicrotaskQueue:
  """
  FIFO queue of pending callbacks.

  Attributes:
      _tasks (Deque[Task]): Callbacks waiting to run with their arguments.
      _draining (bool): True while `drain` is executing.
  """

  def __init__(self) -> None:
    self._tasks: Deque[Task] = deque()
    self._draining = False

  def enqueue(self, callback: Callable[..., Any], *args: Any) -> None:
    """
    Schedules a callback to run on the next drain.

    Args:
        callback: Callable to invoke.
        *args: Positional arguments for the callback.
    """
    self._tasks.append((callback, args))

  def run_once(self) -> bool:
    """
    Runs the oldest queued callback.

    Returns:
        bool: False if the queue was empty.
    """
    if not self._tasks:
      return False
    callback, args = self._tasks.popleft()
    callback(*args)
    return True

  def drain(self) -> int:
    """
    Runs callbacks until the queue is empty, including callbacks scheduled
    while draining. A nested call while draining is a no-op.

    Returns:
        int: Number of callbacks executed.
    """
    if self._draining:
      return 0
    self._draining = True
    executed = 0
    try:
      while self.run_once():
        executed += 1
    finally:
      self._draining = False
    if executed:
      logger.debug("Drained %d microtasks", executed)
    return executed

  def __len__(self) -> int:
    return len(self._tasks)


_DEFAULT_QUEUE = MicrotaskQueue()


def get_queue() -> MicrotaskQueue:
  """Returns the queue used by `Promise` reactions."""
  return _DEFAULT_QUEUE


def set_queue(queue: MicrotaskQueue) -> MicrotaskQueue:
  """
  Replaces the default queue.

  Args:
      queue: The new queue.

  Returns:
      MicrotaskQueue: The previous queue.
  """
  global _DEFAULT_QUEUE
  previous = _DEFAULT_QUEUE
  _DEFAULT_QUEUE = queue
  return previous


def reset_queue() -> MicrotaskQueue:
  """Installs and returns a fresh empty queue."""
  queue = MicrotaskQueue()
  set_queue(queue)
  return queue
