"""
unawait Package.

Lowers Python `async def` functions into plain functions written in
continuation-passing style over deferred values, so that the result runs
without native coroutine support.

Usage
-----

Simple String Lowering
^^^^^^^^^^^^^^^^^^^^^^

.. code-block:: python

    import unawait
    code = "async def f(x):\\n    return await x\\n"
    print(unawait.lower(code))
    # from unawait.runtime.helpers import _await
    # def f(x):
    #     return _await(x)

Advanced Usage (Lowering Engine)
^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^^

.. code-block:: python

    from unawait import LoweringConfig, LoweringEngine

    config = LoweringConfig(inline_helpers=True, hoist=True)
    res = LoweringEngine(config=config).run(code)

    if res.success:
        print(res.code)
    else:
        print(f"Errors: {res.errors}")
"""

from typing import Optional

from unawait.config import LoweringConfig
from unawait.core.conversion_result import ConversionResult
from unawait.core.engine import LoweringEngine
from unawait.enums import LoweringTarget
from unawait.errors import LoweringError, StructuralInvariantError, UnsupportedConstructError

__version__ = "0.0.1"


def lower(
  code: str,
  inline_helpers: bool = False,
  hoist: bool = False,
  target: str = "compat",
  helpers_module: Optional[str] = None,
) -> str:
  """
  Lowers every `async def` in a string of Python code.

  This is a high-level convenience wrapper around the `LoweringEngine`.

  Args:
      code (str): The source code to lower.
      inline_helpers (bool): Copy the runtime helpers into the output instead
          of importing them.
      hoist (bool): Lift closures that capture nothing to module level.
      target (str): "compat" (nested `def` closures) or "modern" (lambdas for
          single-expression closures).
      helpers_module (str, optional): Module to import the helpers from.

  Returns:
      str: The lowered source code.

  Raises:
      LoweringError: If the code does not parse or a function cannot be lowered.
  """
  settings = {"inline_helpers": inline_helpers, "hoist": hoist, "target": target}
  if helpers_module is not None:
    settings["helpers_module"] = helpers_module
  config = LoweringConfig(**settings)

  result = LoweringEngine(config=config).run(code)

  if not result.success:
    error_msg = "\n".join(result.errors)
    raise LoweringError(f"Lowering failed:\n{error_msg}")

  return result.code


__all__ = [
  "ConversionResult",
  "LoweringConfig",
  "LoweringEngine",
  "LoweringError",
  "LoweringTarget",
  "StructuralInvariantError",
  "UnsupportedConstructError",
  "lower",
  "__version__",
]
