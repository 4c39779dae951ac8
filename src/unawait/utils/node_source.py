"""
Rendering of CST fragments for diagnostics and traces.
"""

import libcst as cst

_EMPTY_MODULE = cst.Module(body=[])


def source_of(node: cst.CSTNode, limit: int = 120) -> str:
  """
  Renders a node back to source text on a single line.

  Args:
      node: Any CST node.
      limit: Maximum length; longer text is cut with an ellipsis.

  Returns:
      str: The rendered code.
  """
  text = " ".join(_EMPTY_MODULE.code_for_node(node).split())
  if len(text) > limit:
    return text[: limit - 3] + "..."
  return text
