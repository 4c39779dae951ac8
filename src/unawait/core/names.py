"""
Collision-free identifier generation.

Every name introduced by the lowering (temporaries, flags, closures, helper
aliases) comes from the module-wide `NameGenerator`, which reserves every
identifier already present in the module. Names are derived from a base,
then numbered: `_value`, `_value2`, `_value3`, ...
"""

import keyword
import re
from typing import Iterable, Set

import libcst as cst

from unawait.analysis.bindings import name_occurrences

_INVALID = re.compile(r"[^0-9a-zA-Z_]")


def suggest_name(expression: cst.CSTNode, default: str = "result") -> str:
  """
  Derives a readable base name from an expression.

  `await fetch(url)` gives `fetch`, `await self.reader.read()` gives `read`.
  """
  if isinstance(expression, cst.Name):
    return expression.value
  if isinstance(expression, cst.Attribute):
    return expression.attr.value
  if isinstance(expression, (cst.Call, cst.Subscript)):
    target = expression.func if isinstance(expression, cst.Call) else expression.value
    return suggest_name(target, default)
  if isinstance(expression, cst.Await):
    return suggest_name(expression.expression, default)
  return default


class NameGenerator:
  """
  Hands out identifiers that do not clash with the module or each other.

  Attributes:
      generated: Every name produced by `fresh`.
      flags: Generated boolean flags (exit, interrupt, skip, ...).
  """

  def __init__(self, reserved: Iterable[str] = ()) -> None:
    self._used: Set[str] = set(reserved) | set(keyword.kwlist) | set(keyword.softkwlist)
    self.generated: Set[str] = set()
    self.flags: Set[str] = set()

  @classmethod
  def for_module(cls, module: cst.Module) -> "NameGenerator":
    return cls(name_occurrences(module))

  def reserve(self, name: str) -> None:
    self._used.add(name)

  def is_used(self, name: str) -> bool:
    return name in self._used

  def fresh(self, base: str) -> str:
    """
    Returns a new unique name starting with an underscore.

    Args:
        base: Preferred name, sanitized into an identifier.
    """
    stem = "_" + (_INVALID.sub("_", base).lstrip("_") or "value")
    candidate = stem
    counter = 2
    while candidate in self._used:
      candidate = f"{stem}{counter}"
      counter += 1
    self._used.add(candidate)
    self.generated.add(candidate)
    return candidate

  def fresh_flag(self, base: str) -> str:
    name = self.fresh(base)
    self.flags.add(name)
    return name

  def exact(self, name: str) -> str:
    """Uses `name` itself when free, a numbered variant otherwise."""
    candidate = name
    counter = 2
    while candidate in self._used:
      candidate = f"{name}{counter}"
      counter += 1
    self._used.add(candidate)
    self.generated.add(candidate)
    return candidate
