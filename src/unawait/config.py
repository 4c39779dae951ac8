"""
Lowering Configuration Store.

Settings are read from the `[tool.unawait]` table of the nearest
`pyproject.toml` and overridden by explicit arguments (CLI flags).
"""

import sys
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from unawait.enums import LoweringTarget

if sys.version_info >= (3, 11):
  import tomllib
else:
  try:
    import tomli as tomllib
  except ImportError:
    tomllib = None  # type: ignore

DEFAULT_HELPERS_MODULE = "unawait.runtime.helpers"


class LoweringConfig(BaseModel):
  """
  Configuration container for the lowering engine.
  """

  inline_helpers: bool = Field(False, description="Copy helper definitions into the output instead of importing them.")
  hoist: bool = Field(False, description="Lift closures that capture nothing to module level.")
  target: LoweringTarget = Field(LoweringTarget.COMPAT, description="Closure flavour of the generated code.")
  helpers_module: str = Field(DEFAULT_HELPERS_MODULE, description="Module the helper imports are taken from.")

  @field_validator("target", mode="before")
  @classmethod
  def validate_target(cls, v: Any) -> Any:
    """
    Normalizes the target flavour.

    Args:
        v: Raw value (enum member or string).

    Returns:
        The normalized value.

    Raises:
        ValueError: If the string names no known target.
    """
    if isinstance(v, str):
      v_clean = v.lower().strip()
      known = [t.value for t in LoweringTarget]
      if v_clean not in known:
        raise ValueError(f"Unknown target: '{v_clean}'. Supported targets: {known}")
      return v_clean
    return v

  @field_validator("helpers_module")
  @classmethod
  def validate_helpers_module(cls, v: str) -> str:
    parts = v.split(".")
    if not all(part.isidentifier() for part in parts):
      raise ValueError(f"Invalid module path: '{v}'")
    return v

  @classmethod
  def load(
    cls,
    inline_helpers: Optional[bool] = None,
    hoist: Optional[bool] = None,
    target: Optional[str] = None,
    search_path: Optional[Path] = None,
    config_file: Optional[Path] = None,
  ) -> "LoweringConfig":
    """
    Loads configuration from pyproject.toml and applies overrides.

    Args:
        inline_helpers: Override for inline helper mode.
        hoist: Override for the hoisting pass.
        target: Override for the closure flavour.
        search_path: Directory to start searching for pyproject.toml.
        config_file: Explicit pyproject.toml to read instead of searching.

    Returns:
        LoweringConfig: The resolved configuration.
    """
    if config_file is not None:
      settings = _read_tool_section(config_file)
    else:
      settings, _ = _load_toml_settings(search_path or Path.cwd())

    overrides = {"inline_helpers": inline_helpers, "hoist": hoist, "target": target}
    for key, value in overrides.items():
      if value is not None:
        settings[key] = value
    return cls(**settings)


def _read_tool_section(toml_path: Path) -> Dict[str, Any]:
  if not tomllib:
    return {}
  with open(toml_path, "rb") as f:
    data = tomllib.load(f)
  section = data.get("tool", {}).get("unawait", {})
  return {key.replace("-", "_"): value for key, value in section.items()}


def _load_toml_settings(start_path: Path) -> Tuple[Dict[str, Any], Optional[Path]]:
  """
  Searches the start directory and its parents for 'pyproject.toml'.

  Args:
      start_path: Directory to start search from.

  Returns:
      Tuple[Dict, Optional[Path]]: The `[tool.unawait]` table and the
      directory it was found in.
  """
  current = start_path.resolve()
  for parent in [current, *current.parents]:
    toml_path = parent / "pyproject.toml"
    if toml_path.is_file():
      return _read_tool_section(toml_path), parent
  return {}, None
