"""
Orchestration Engine for Async Lowering.

This module provides the `LoweringEngine`, the entry point that turns a module
containing `async def` functions into one where every such function returns
a deferred value and contains no suspension point.

The Engine pipeline consists of:

1.  **Ingestion Phase**: Parses the source text into a LibCST tree.

2.  **Function Lowering**: Visits the module innermost function first and
    hands every `async def` to a `FunctionLowerer`. Functions that cannot be
    lowered are kept unchanged and reported in `ConversionResult.errors`.

3.  **Hoisting**: Closures lifted out of a function (when `hoist` is enabled)
    are placed before the top-level statement that contained it.

4.  **Helper Emission**: The runtime helpers referenced by the generated code
    are imported from `unawait.runtime.helpers` or copied inline.
"""

from dataclasses import dataclass
from typing import AbstractSet, List, Optional

import libcst as cst

from unawait.analysis.bindings import collect_scope
from unawait.config import LoweringConfig
from unawait.core.context import LoweringContext
from unawait.core.conversion_result import ConversionResult
from unawait.core.driver import FunctionLowerer
from unawait.core.tracer import get_tracer, reset_tracer
from unawait.errors import LoweringError


@dataclass
class _Scope:
  kind: str
  name: str
  bound: AbstractSet[str]


class _ModuleLowering(cst.CSTTransformer):
  """
  Lowers every `async def` of a module, innermost first.

  Attributes:
      context: Module-wide lowering state.
      errors: Diagnostics of functions left unchanged.
  """

  def __init__(self, context: LoweringContext) -> None:
    self.context = context
    self.errors: List[str] = []
    self._scopes: List[_Scope] = []

  def visit_ClassDef(self, node: cst.ClassDef) -> bool:
    self._scopes.append(_Scope("class", node.name.value, frozenset()))
    return True

  def leave_ClassDef(self, original_node: cst.ClassDef, updated_node: cst.ClassDef) -> cst.ClassDef:
    self._scopes.pop()
    return updated_node

  def visit_FunctionDef(self, node: cst.FunctionDef) -> bool:
    self._scopes.append(_Scope("function", node.name.value, collect_scope(node).bound))
    return True

  def leave_FunctionDef(self, original_node: cst.FunctionDef, updated_node: cst.FunctionDef) -> cst.FunctionDef:
    self._scopes.pop()
    if updated_node.asynchronous is None:
      return updated_node

    qualname = self._qualname(updated_node.name.value)
    enclosing = frozenset().union(*(scope.bound for scope in self._scopes if scope.kind == "function"))
    method = bool(self._scopes) and self._scopes[-1].kind == "class"
    lowerer = FunctionLowerer(self.context, updated_node, enclosing, method, qualname)
    try:
      return lowerer.lower()
    except LoweringError as e:
      self.errors.append(f"{qualname}: {e}")
      self.context.tracer.log_warning(f"{qualname} left unchanged: {e}")
      return updated_node

  def _qualname(self, name: str) -> str:
    parts = []
    for scope in self._scopes:
      parts.append(scope.name)
      if scope.kind == "function":
        parts.append("<locals>")
    return ".".join([*parts, name])


class LoweringEngine:
  """
  The main compilation unit.

  Encapsulates the configuration of a lowering job and runs the pipeline on
  one module at a time.
  """

  def __init__(self, config: Optional[LoweringConfig] = None) -> None:
    """
    Initializes the Engine.

    Args:
        config: Lowering configuration. Loaded from the nearest
            `pyproject.toml` when omitted.
    """
    self.config = config or LoweringConfig.load()

  def parse(self, code: str) -> cst.Module:
    """
    Parses source string into a LibCST Module.

    Raises:
        libcst.ParserSyntaxError: If the input code is invalid Python.
    """
    return cst.parse_module(code)

  def to_source(self, tree: cst.Module) -> str:
    return tree.code

  def run(self, code: str) -> ConversionResult:
    """
    Executes the full lowering pipeline.

    Args:
        code (str): The input source string.

    Returns:
        ConversionResult: The lowered code, per-function diagnostics and the trace.
    """
    reset_tracer()
    tracer = get_tracer()

    tracer.start_phase("Lowering Pipeline", f"target={self.config.target.value}")

    # --- PHASE 1: INGESTION ---
    tracer.start_phase("Preprocessing", "Parsing")
    try:
      tree = self.parse(code)
      tracer.log_mutation("Module", "(Raw Source)", "(AST Parsed)")
    except cst.ParserSyntaxError as e:
      return ConversionResult(
        code=code,
        errors=[f"Parse Error: {e}"],
        success=False,
        trace_events=tracer.export(),
      )
    tracer.end_phase()

    context = LoweringContext(tree, self.config, tracer)

    # --- PHASE 2 + 3: FUNCTION LOWERING AND HOISTING ---
    tracer.start_phase("Function Lowering", "Innermost async functions first")
    lowering = _ModuleLowering(context)
    body: List[cst.BaseStatement] = []
    for statement in tree.body:
      lowered = statement.visit(lowering)
      body.extend(context.take_lifted())
      body.append(lowered)
    tree = tree.with_changes(body=body)
    tracer.end_phase()

    # --- PHASE 4: HELPER EMISSION ---
    tracer.start_phase("Helper Emission", "Import" if not self.config.inline_helpers else "Inline")
    tree = context.helpers.emit(tree)
    tracer.end_phase()

    final_code = self.to_source(tree)

    tracer.end_phase()
    return ConversionResult(
      code=final_code,
      errors=lowering.errors,
      success=not lowering.errors,
      lowered_functions=list(context.lowered),
      helpers=context.helpers.used,
      stats=tracer.summary(),
      trace_events=tracer.export(),
    )
