"""
Pytest Configuration and Fixtures.

Includes:
- Syspath patching for local imports.
- A fresh microtask queue for every test.
- Helpers that lower a source snippet, execute both the native and the lowered
  definition, and report what each one did.
"""

import sys
import textwrap
from pathlib import Path
from typing import Any, Callable, Dict, List, Tuple

import pytest

# Add src to path so we can import 'unawait' without installing it
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from unawait.config import LoweringConfig  # noqa: E402
from unawait.core.engine import LoweringEngine  # noqa: E402
from unawait.runtime import Promise, get_queue, reset_queue, run, spawn  # noqa: E402
from unawait.utils.console import reset_console  # noqa: E402


@pytest.fixture(autouse=True)
def isolated_queue():
  """Every test gets its own microtask queue."""
  queue = reset_queue()
  yield queue
  reset_queue()


@pytest.fixture(autouse=True)
def isolated_console():
  yield
  reset_console()


def later(value: Any) -> Promise:
  """A promise fulfilled with `value` on the next microtask."""
  return Promise(lambda resolve, reject: get_queue().enqueue(resolve, value))


def fail_later(error: BaseException) -> Promise:
  """A promise rejected with `error` on the next microtask."""
  return Promise(lambda resolve, reject: get_queue().enqueue(reject, error))


def lower_source(code: str, **options: Any) -> str:
  """Lowers `code` and fails the test when any function was left unchanged."""
  result = LoweringEngine(LoweringConfig(**options)).run(textwrap.dedent(code))
  assert result.success, result.errors
  return result.code


def _namespace(code: str, log: List[Any], extra: Dict[str, Any]) -> Dict[str, Any]:
  namespace: Dict[str, Any] = {"later": later, "fail_later": fail_later, "log": log, **extra}
  exec(compile(code, "<snippet>", "exec"), namespace)
  return namespace


def _outcome(thunk: Callable[[], Any]) -> Tuple[str, Any]:
  try:
    return ("ok", thunk())
  except Exception as error:
    return ("error", (type(error).__name__, str(error)))


class Comparison:
  """
  Runs one async function natively and lowered.

  Attributes:
      code: The lowered module source.
  """

  def __init__(self, source: str, **options: Any) -> None:
    self.source = textwrap.dedent(source)
    self.code = lower_source(self.source, **options)

  def call(self, name: str, *args: Any, extra: Dict[str, Any] = None) -> Tuple[Tuple[str, Any], List[Any]]:
    """Runs the lowered function and returns its outcome with the side-effect log."""
    log: List[Any] = []
    namespace = _namespace(self.code, log, extra or {})
    return _outcome(lambda: run(namespace[name](*args))), log

  def native(self, name: str, *args: Any, extra: Dict[str, Any] = None) -> Tuple[Tuple[str, Any], List[Any]]:
    log: List[Any] = []
    namespace = _namespace(self.source, log, extra or {})
    return _outcome(lambda: run(spawn(namespace[name](*args)))), log

  def check(self, name: str, *args: Any, extra: Dict[str, Any] = None) -> Tuple[Tuple[str, Any], List[Any]]:
    """Asserts that both versions return (or raise) the same and log the same."""
    expected = self.native(name, *args, extra=extra)
    actual = self.call(name, *args, extra=extra)
    assert actual == expected, self.code
    return actual


@pytest.fixture
def compare() -> Callable[..., Comparison]:
  """Builds a `Comparison` for a source snippet."""
  return Comparison
