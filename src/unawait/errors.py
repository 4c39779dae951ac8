"""
Exceptions raised by the lowering pipeline.

Each error carries the source text of the node that caused it so that the
engine can report a readable diagnostic.
"""

from typing import Optional


class LoweringError(Exception):
  """Base class for lowering failures."""

  def __init__(self, message: str, source: Optional[str] = None) -> None:
    self.message = message
    self.source = source
    super().__init__(self.__str__())

  def __str__(self) -> str:
    if self.source:
      return f"{self.message}: `{self.source}`"
    return self.message


class UnsupportedConstructError(LoweringError):
  """The input uses a construct that cannot be lowered faithfully."""


class StructuralInvariantError(LoweringError):
  """The rewritten function still contains a suspension point, or is malformed."""
