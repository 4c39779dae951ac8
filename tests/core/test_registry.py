"""
Tests for runtime helper references and module-level state.
"""

import libcst as cst
import pytest

from unawait.config import LoweringConfig
from unawait.core.context import LoweringContext
from unawait.core.names import NameGenerator
from unawait.core.registry import HelperRegistry, insertion_index
from unawait.core.tracer import TraceEventType, TraceLogger


def _registry(code: str = "", **options) -> HelperRegistry:
  names = NameGenerator.for_module(cst.parse_module(code))
  return HelperRegistry(names, LoweringConfig(**options), TraceLogger())


def test_reference_is_stable_and_traced():
  registry = _registry()
  first = registry.reference("_await")
  second = registry.reference("_await")
  assert first.value == second.value == "_await"
  assert registry.used == ["_await"]
  assert len(registry.tracer.events_of(TraceEventType.HELPER_REFERENCE)) == 1


def test_unknown_helper_raises():
  with pytest.raises(KeyError, match="Unknown runtime helper"):
    _registry().reference("_sleep")


def test_clashing_helper_is_aliased():
  module = cst.parse_module('"""Doc."""\nfrom __future__ import annotations\n_await = 1\n')
  registry = _registry(module.code)
  assert registry.local_name("_await") == "_await2"
  assert registry.locals == {"_await2": "_await"}

  emitted = registry.emit(module).code
  assert emitted.splitlines()[2] == "from unawait.runtime.helpers import _await as _await2"


def test_custom_helpers_module():
  registry = _registry(helpers_module="vendor.rt")
  registry.reference("_for")
  registry.reference("_async")
  emitted = registry.emit(cst.parse_module("x = 1\n")).code
  assert emitted.startswith("from vendor.rt import _async, _for\n")


def test_emitted_import_is_followed_by_two_blank_lines():
  registry = _registry()
  registry.reference("_await")
  emitted = registry.emit(cst.parse_module('"""Doc."""\n# setup\nx = 1\n')).code
  assert emitted.splitlines()[1:] == ["from unawait.runtime.helpers import _await", "", "", "# setup", "x = 1"]

  spaced = registry.emit(cst.parse_module('"""Doc."""\n\n\n\nx = 1\n')).code
  assert spaced.splitlines()[2:] == ["", "", "", "x = 1"]


def test_emit_without_references_is_noop():
  module = cst.parse_module("x = 1\n")
  assert _registry().emit(module) is module


def test_inline_mode_copies_dependencies():
  registry = _registry(inline_helpers=True)
  registry.reference("_for_of")
  code = registry.emit(cst.parse_module("x = 1\n")).code
  assert "def _for_of(" in code
  assert "def _iterate(" in code
  assert "class _Cursor" in code
  assert "def _switch(" not in code
  assert "from unawait.runtime.promise import" in code
  assert code.rstrip().endswith("x = 1")


def test_insertion_index():
  assert insertion_index(cst.parse_module("x = 1\n")) == 0
  assert insertion_index(cst.parse_module('"""Doc."""\nfrom __future__ import annotations\nx = 1\n')) == 2


def test_context_lift_deduplicates_closures():
  module = cst.parse_module("")
  context = LoweringContext(module, LoweringConfig(), TraceLogger())
  first = cst.parse_module("def _resume(v):\n    return v + 1\n").body[0]
  twin = cst.parse_module("def _resume2(v):\n    return v + 1\n").body[0]
  other = cst.parse_module("def _resume3(v):\n    return v\n").body[0]

  assert context.lift(first) == "_resume"
  assert context.lift(twin) == "_resume"
  assert context.lift(other) == "_resume3"
  assert [f.name.value for f in context.take_lifted()] == ["_resume", "_resume3"]
  assert context.take_lifted() == []


def test_tracer_phases_nest():
  tracer = TraceLogger()
  outer = tracer.start_phase("Outer")
  tracer.start_phase("Inner")
  tracer.log_suspension("x = await f()", "await f()")
  tracer.end_phase()
  tracer.end_phase()
  tracer.end_phase()

  events = tracer.export()
  assert len(events) == 5
  assert events[1]["parent_id"] == outer
  assert events[2]["type"] == TraceEventType.SUSPENSION
  assert events[2]["metadata"]["awaited"] == "await f()"
