"""
Lowering Context Module.

`LoweringContext` holds the state shared by every function lowered into the
same output module: the name generator, the helper registry, the trace
logger, the module scope, and the closures lifted to module level by the
hoisting pass. Function-scoped state lives on the `FunctionLowerer` itself
and is discarded once the function is finalized.
"""

from typing import List, Optional, Tuple

import libcst as cst

from unawait.analysis.bindings import ScopeInfo, collect_scope
from unawait.config import LoweringConfig
from unawait.core.names import NameGenerator
from unawait.core.registry import HelperRegistry
from unawait.core.tracer import TraceLogger


class LoweringContext:
  """
  Module-wide state container.

  Attributes:
      module: The parsed input module.
      config: Active configuration.
      tracer: Trace logger receiving lowering events.
      names: Collision-free identifier source for the whole module.
      helpers: Runtime helper references of the output module.
      module_scope: Bindings of the module scope.
      lowered: Qualified names of lowered functions, in completion order.
  """

  def __init__(
    self,
    module: cst.Module,
    config: LoweringConfig,
    tracer: TraceLogger,
    names: Optional[NameGenerator] = None,
  ) -> None:
    self.module = module
    self.config = config
    self.tracer = tracer
    self.names = names or NameGenerator.for_module(module)
    self.helpers = HelperRegistry(self.names, config, tracer)
    self.module_scope: ScopeInfo = collect_scope(module)
    self.lowered: List[str] = []
    self._lifted: List[cst.FunctionDef] = []
    self._shapes: List[Tuple[cst.FunctionDef, str]] = []

  def helper(self, name: str) -> cst.Name:
    return self.helpers.reference(name)

  def lift(self, closure: cst.FunctionDef) -> str:
    """
    Queues a closure for insertion at module level.

    Structurally equal closures are only emitted once.

    Returns:
        str: The name under which the closure is reachable.
    """
    shape = closure.with_changes(name=cst.Name("_"))
    for known, name in self._shapes:
      if known.deep_equals(shape):
        return name
    self._shapes.append((shape, closure.name.value))
    self._lifted.append(closure)
    return closure.name.value

  def take_lifted(self) -> List[cst.FunctionDef]:
    """Returns and clears the closures lifted since the last call."""
    lifted, self._lifted = self._lifted, []
    return lifted
