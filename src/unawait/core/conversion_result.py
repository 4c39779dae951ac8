"""
Output of the lowering pipeline.

`ConversionResult` bundles the generated module, the diagnostics collected
while lowering, and the execution trace.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, Field


class ConversionResult(BaseModel):
  """
  Container for the results of a lowering job.
  """

  code: str = Field(default="", description="The generated source code.")
  errors: List[str] = Field(default_factory=list, description="Diagnostics for functions that could not be lowered.")
  success: bool = Field(default=True, description="True if every async function was lowered.")
  lowered_functions: List[str] = Field(default_factory=list, description="Qualified names of lowered functions.")
  helpers: List[str] = Field(default_factory=list, description="Runtime helpers referenced by the output.")
  stats: Dict[str, int] = Field(default_factory=dict, description="Suspension, restructure and warning counts.")
  trace_events: List[Dict[str, Any]] = Field(default_factory=list, description="Execution trace log data.")

  @property
  def has_errors(self) -> bool:
    return len(self.errors) > 0
