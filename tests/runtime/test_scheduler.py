"""
Tests for the Microtask Queue.
"""

from unawait.runtime.scheduler import MicrotaskQueue, get_queue, reset_queue, set_queue


def test_fifo_order_and_nested_scheduling():
  queue = MicrotaskQueue()
  order = []

  def first():
    order.append("first")
    queue.enqueue(order.append, "nested")

  queue.enqueue(first)
  queue.enqueue(order.append, "second")

  assert len(queue) == 2
  assert queue.drain() == 3
  assert order == ["first", "second", "nested"]
  assert len(queue) == 0


def test_run_once_on_empty_queue():
  assert MicrotaskQueue().run_once() is False


def test_nested_drain_is_noop():
  queue = MicrotaskQueue()
  seen = []

  def reentrant():
    seen.append(queue.drain())

  queue.enqueue(reentrant)
  queue.drain()
  assert seen == [0]


def test_set_queue_returns_previous():
  fresh = MicrotaskQueue()
  previous = set_queue(fresh)
  try:
    assert get_queue() is fresh
  finally:
    set_queue(previous)
  assert get_queue() is previous


def test_reset_queue_installs_empty_queue():
  get_queue().enqueue(lambda: None)
  queue = reset_queue()
  assert get_queue() is queue
  assert len(queue) == 0
