"""
Tests for configuration loading from pyproject.toml.
"""

import pytest
from pydantic import ValidationError

from unawait.config import DEFAULT_HELPERS_MODULE, LoweringConfig
from unawait.enums import LoweringTarget


def test_defaults(tmp_path):
  config = LoweringConfig.load(search_path=tmp_path)
  assert config.inline_helpers is False
  assert config.hoist is False
  assert config.target == LoweringTarget.COMPAT
  assert config.helpers_module == DEFAULT_HELPERS_MODULE


def test_reads_nearest_pyproject(tmp_path):
  (tmp_path / "pyproject.toml").write_text(
    '[tool.unawait]\ninline-helpers = true\ntarget = "MODERN"\n',
    encoding="utf-8",
  )
  nested = tmp_path / "src" / "pkg"
  nested.mkdir(parents=True)

  config = LoweringConfig.load(search_path=nested)
  assert config.inline_helpers is True
  assert config.target == LoweringTarget.MODERN


def test_overrides_win(tmp_path):
  (tmp_path / "pyproject.toml").write_text("[tool.unawait]\nhoist = true\n", encoding="utf-8")
  config = LoweringConfig.load(hoist=False, target="modern", search_path=tmp_path)
  assert config.hoist is False
  assert config.target == LoweringTarget.MODERN


def test_other_tool_sections_ignored(tmp_path):
  (tmp_path / "pyproject.toml").write_text("[tool.ruff]\nline-length = 99\n", encoding="utf-8")
  assert LoweringConfig.load(search_path=tmp_path) == LoweringConfig()


def test_unknown_target_rejected():
  with pytest.raises(ValidationError, match="Unknown target"):
    LoweringConfig(target="es5")


@pytest.mark.parametrize("module", ["", "vendor..rt", "vendor.1rt"])
def test_invalid_helpers_module(module):
  with pytest.raises(ValidationError):
    LoweringConfig(helpers_module=module)
