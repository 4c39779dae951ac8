"""
Tests for the CLI 'lower' command.

Verifies that:
1.  Single files are written to `--out` (or printed when it is omitted).
2.  Directories are mirrored into the output directory.
3.  Missing inputs and bad configuration exit with status 1.
4.  The execution trace is dumped as JSON on request.
"""

import io
import json
from unittest.mock import patch

import pytest
from rich.console import Console

from unawait.cli.__main__ import main
from unawait.utils.console import set_console

SOURCE = "async def fetch(client):\n    data = await client.get()\n    return data\n"


def test_lower_single_file(tmp_path):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")
  out = tmp_path / "out" / "app.py"

  assert main(["lower", str(src), "--out", str(out)]) == 0

  lowered = out.read_text(encoding="utf-8")
  assert "async def" not in lowered
  assert lowered.startswith("from unawait.runtime.helpers import")


def test_lower_prints_without_out(tmp_path, capsys):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")

  assert main(["lower", str(src)]) == 0
  assert "def fetch(client):" in capsys.readouterr().out


def test_lower_directory(tmp_path):
  src_dir = tmp_path / "pkg"
  (src_dir / "sub").mkdir(parents=True)
  (src_dir / "a.py").write_text(SOURCE, encoding="utf-8")
  (src_dir / "sub" / "b.py").write_text("x = 1\n", encoding="utf-8")
  out_dir = tmp_path / "dist"

  assert main(["lower", str(src_dir), "--out", str(out_dir)]) == 0
  assert "async def" not in (out_dir / "a.py").read_text(encoding="utf-8")
  assert (out_dir / "sub" / "b.py").read_text(encoding="utf-8") == "x = 1\n"


def test_directory_requires_out(tmp_path):
  (tmp_path / "a.py").write_text(SOURCE, encoding="utf-8")
  assert main(["lower", str(tmp_path)]) == 1


def test_missing_input(tmp_path):
  assert main(["lower", str(tmp_path / "nope.py")]) == 1


def test_partial_failure_still_writes_output(tmp_path):
  """
  Scenario: One function inspects its own locals.
  Expectation: Exit code 1, other functions lowered, that one kept.
  """
  src = tmp_path / "mixed.py"
  src.write_text("async def snapshot():\n    return locals()\n\n" + SOURCE, encoding="utf-8")
  out = tmp_path / "mixed_out.py"

  assert main(["lower", str(src), "--out", str(out)]) == 1
  lowered = out.read_text(encoding="utf-8")
  assert "async def snapshot():" in lowered
  assert "def fetch(client):" in lowered


def test_json_trace_written(tmp_path):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")
  trace = tmp_path / "trace.json"

  assert main(["lower", str(src), "--out", str(tmp_path / "o.py"), "--json-trace", str(trace)]) == 0
  events = json.loads(trace.read_text(encoding="utf-8"))
  assert events[0]["type"] == "phase_start"
  assert any(event["type"] == "suspension" for event in events)


def test_config_file_is_read(tmp_path):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")
  cfg = tmp_path / "custom.toml"
  cfg.write_text('[tool.unawait]\nhelpers-module = "vendor.rt"\n', encoding="utf-8")
  out = tmp_path / "o.py"

  assert main(["lower", str(src), "--out", str(out), "--config", str(cfg)]) == 0
  assert out.read_text(encoding="utf-8").startswith("from vendor.rt import")


def test_invalid_config_exits(tmp_path):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")
  cfg = tmp_path / "pyproject.toml"
  cfg.write_text('[tool.unawait]\ntarget = "ancient"\n', encoding="utf-8")

  assert main(["lower", str(src)]) == 1


def test_missing_config_file(tmp_path):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")
  assert main(["lower", str(src), "--config", str(tmp_path / "missing.toml")]) == 1


@patch("unawait.cli.__main__.handle_lower")
def test_flags_are_forwarded(mock_handle, tmp_path):
  """
  Scenario: User runs `unawait lower src --inline-helpers --hoist --target modern`.
  Expectation: The overrides reach the handler; unset flags stay None.
  """
  mock_handle.return_value = 0
  assert main(["lower", str(tmp_path), "--inline-helpers", "--target", "modern"]) == 0

  kwargs = mock_handle.call_args[1]
  assert kwargs["inline_helpers"] is True
  assert kwargs["hoist"] is None
  assert kwargs["target"] == "modern"


def test_version(capsys):
  with pytest.raises(SystemExit) as info:
    main(["--version"])
  assert info.value.code == 0
  assert "0.0.1" in capsys.readouterr().out


def _recording_console() -> Console:
  recorder = Console(record=True, width=500, file=io.StringIO())
  set_console(recorder)
  return recorder


def test_verbose_reports_functions(tmp_path):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")
  recorder = _recording_console()

  assert main(["-v", "lower", str(src), "--out", str(tmp_path / "o.py")]) == 0
  text = recorder.export_text()
  assert "lowered fetch" in text
  assert "1 suspension points" in text


def test_quiet_hides_success(tmp_path):
  src = tmp_path / "app.py"
  src.write_text(SOURCE, encoding="utf-8")
  recorder = _recording_console()

  assert main(["-q", "lower", str(src), "--out", str(tmp_path / "o.py")]) == 0
  assert recorder.export_text().strip() == ""
