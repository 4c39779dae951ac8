"""
Lowering Trace Logger.

Records what the engine did to a module, as a flat list of events linked to
their enclosing phase:

* phases (the pipeline, each async function),
* suspension points found by the await locator,
* compound statements replaced by a runtime combinator,
* helper references and before/after snapshots of rewritten functions.

Event ids are sequential so that two runs over the same input produce the
same trace, apart from the elapsed times.
"""

import itertools
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class TraceEventType(str, Enum):
  PHASE_START = "phase_start"
  PHASE_END = "phase_end"
  SUSPENSION = "suspension"
  RESTRUCTURE = "restructure"
  HELPER_REFERENCE = "helper_reference"
  AST_MUTATION = "ast_mutation"
  ANALYSIS_WARNING = "analysis_warning"


@dataclass
class TraceEvent:
  id: str
  type: TraceEventType
  elapsed: float
  description: str
  parent_id: Optional[str] = None
  metadata: Dict[str, Any] = field(default_factory=dict)


class TraceLogger:
  """
  Collects lowering events. Shared by the engine, the function driver and
  the helper registry of one run.

  Attributes:
      _events: Recorded events in emission order.
      _open: Ids of the phases not yet ended, innermost last.
  """

  def __init__(self) -> None:
    self._events: List[TraceEvent] = []
    self._open: List[str] = []
    self._ids = itertools.count(1)
    self._started = time.perf_counter()

  def _record(self, kind: TraceEventType, description: str, parent: Optional[str] = None, **metadata: Any) -> str:
    event_id = f"evt-{next(self._ids):04d}"
    if parent is None and self._open:
      parent = self._open[-1]
    elapsed = round(time.perf_counter() - self._started, 6)
    self._events.append(TraceEvent(event_id, kind, elapsed, description, parent, metadata))
    return event_id

  def start_phase(self, name: str, detail: str = "") -> str:
    """Opens a phase nested in the current one and returns its id."""
    phase_id = self._record(TraceEventType.PHASE_START, name, detail=detail)
    self._open.append(phase_id)
    return phase_id

  def end_phase(self) -> None:
    if self._open:
      phase_id = self._open.pop()
      self._record(TraceEventType.PHASE_END, "End Phase", parent=phase_id)

  def log_suspension(self, statement: str, awaited: str) -> None:
    self._record(TraceEventType.SUSPENSION, f"Suspension in '{statement}'", awaited=awaited)

  def log_restructure(self, construct: str, helper: str) -> None:
    """Logs a compound statement and the combinator (or strategy) replacing it."""
    self._record(TraceEventType.RESTRUCTURE, f"Restructured {construct}", helper=helper)

  def log_helper(self, helper: str, local_name: str) -> None:
    self._record(TraceEventType.HELPER_REFERENCE, f"Referenced {helper}", local_name=local_name)

  def log_mutation(self, node_type: str, before: str, after: str) -> None:
    self._record(TraceEventType.AST_MUTATION, f"Transformed {node_type}", before=before, after=after)

  def log_warning(self, message: str) -> None:
    self._record(TraceEventType.ANALYSIS_WARNING, message, level="warning")

  def events_of(self, kind: TraceEventType) -> List[TraceEvent]:
    return [event for event in self._events if event.type == kind]

  def summary(self) -> Dict[str, int]:
    """Counts suspensions, restructured statements and warnings."""
    counts = Counter(event.type for event in self._events)
    return {
      "suspensions": counts[TraceEventType.SUSPENSION],
      "restructured": counts[TraceEventType.RESTRUCTURE],
      "warnings": counts[TraceEventType.ANALYSIS_WARNING],
    }

  def export(self) -> List[Dict[str, Any]]:
    """Events as plain dictionaries, ready for `json.dump`."""
    return [asdict(event) for event in self._events]


_TRACER = TraceLogger()


def get_tracer() -> TraceLogger:
  return _TRACER


def reset_tracer() -> TraceLogger:
  global _TRACER
  _TRACER = TraceLogger()
  return _TRACER
