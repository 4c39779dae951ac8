"""
Shared enumerations for the lowering pipeline.
"""

from enum import Enum


class LoweringTarget(str, Enum):
  """
  Output flavour of synthesized closures.

  COMPAT emits a nested `def` for every closure. MODERN emits a `lambda`
  whenever the closure body is a single `return <expression>`.
  """

  COMPAT = "compat"
  MODERN = "modern"


class ExitKind(str, Enum):
  """Statements that transfer control out of the enclosing block."""

  RETURN = "return"
  RAISE = "raise"
  BREAK = "break"
  CONTINUE = "continue"


class FrameKind(str, Enum):
  """Restructured constructs tracked by the exit normalizer."""

  BRANCH = "branch"
  LOOP = "loop"
