"""
Lower Command Handler.

This module implements the logic for the `unawait lower` command.
It orchestrates:
1. Configuration loading (pyproject.toml + CLI overrides).
2. Lowering of a file, or of every `.py` file below a directory.
3. Output writing and trace logging.
"""

import json
from pathlib import Path
from typing import Dict, Optional

from pydantic import ValidationError
from rich.table import Table

from unawait.config import LoweringConfig
from unawait.core.conversion_result import ConversionResult
from unawait.core.engine import LoweringEngine
from unawait.utils.console import console, log_debug, log_error, log_info, log_success, log_warning


def handle_lower(
  input_path: Path,
  output_path: Optional[Path],
  inline_helpers: Optional[bool] = None,
  hoist: Optional[bool] = None,
  target: Optional[str] = None,
  config_file: Optional[Path] = None,
  json_trace_path: Optional[Path] = None,
) -> int:
  """
  Handles the 'lower' command execution.

  Args:
      input_path: Path to the source file or directory to lower.
      output_path: Path where generated code should be saved. Single files are
          printed to stdout when omitted.
      inline_helpers: Override for inline helper mode.
      hoist: Override for the hoisting pass.
      target: Override for the closure flavour.
      config_file: Explicit pyproject.toml to read settings from.
      json_trace_path: Optional path to dump execution trace JSON.

  Returns:
      int: Exit code (0 for success, 1 for failure).
  """
  if not input_path.exists():
    log_error(f"Input not found: {input_path}")
    return 1
  if config_file is not None and not config_file.is_file():
    log_error(f"Config file not found: {config_file}")
    return 1

  try:
    config = LoweringConfig.load(
      inline_helpers=inline_helpers,
      hoist=hoist,
      target=target,
      search_path=input_path if input_path.is_dir() else input_path.parent,
      config_file=config_file,
    )
  except ValidationError as e:
    log_error(f"Invalid configuration: {e}")
    return 1

  if input_path.is_file():
    result = _lower_single_file(input_path, output_path, config, json_trace_path)
    return 0 if result.success else 1

  if not output_path:
    log_error("Directory lowering requires --out destination directory.")
    return 1

  py_files = sorted(input_path.rglob("*.py"))
  if not py_files:
    log_warning(f"No .py files found in {input_path}")
    return 0

  log_info(f"Processing {len(py_files)} files from {input_path}...")

  batch_results: Dict[str, ConversionResult] = {}
  for src_file in py_files:
    rel_path = src_file.relative_to(input_path)
    batch_trace = None
    if json_trace_path:
      batch_trace = (output_path / rel_path).with_suffix(".trace.json")
    batch_results[str(rel_path)] = _lower_single_file(src_file, output_path / rel_path, config, batch_trace)

  _print_batch_summary(batch_results)
  return 0 if all(r.success for r in batch_results.values()) else 1


def _lower_single_file(
  input_path: Path,
  output_path: Optional[Path],
  config: LoweringConfig,
  json_trace_path: Optional[Path] = None,
) -> ConversionResult:
  """
  Lowers one file and writes the result.

  Functions that could not be lowered are reported; the file is still written
  with those functions left unchanged.

  Returns:
      ConversionResult: Result object containing status and code.
  """
  try:
    with open(input_path, "rt", encoding="utf-8") as f:
      code = f.read()
  except OSError as e:
    log_error(f"Failed to read {input_path}: {e}")
    return ConversionResult(success=False, errors=[str(e)])

  result = LoweringEngine(config=config).run(code)
  if result.lowered_functions:
    log_debug(f"{input_path}: lowered {', '.join(result.lowered_functions)} using {', '.join(result.helpers)}")

  if json_trace_path and result.trace_events:
    try:
      json_trace_path.parent.mkdir(parents=True, exist_ok=True)
      with open(json_trace_path, "wt", encoding="utf-8") as f:
        json.dump(result.trace_events, f, indent=2, default=str)
      log_info(f"Trace saved to [path]{json_trace_path}[/path]")
    except OSError as e:
      log_error(f"Failed to write trace: {e}")

  for error in result.errors:
    log_warning(f"{input_path}: {error}")

  if output_path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "wt", encoding="utf-8") as f:
      f.write(result.code)
    if result.success:
      suspensions = result.stats.get("suspensions", 0)
      log_success(f"Lowered: [path]{input_path}[/path] -> [path]{output_path}[/path] ({suspensions} suspension points)")
  else:
    print(result.code)

  return result


def _print_batch_summary(results: Dict[str, ConversionResult]) -> None:
  """
  Renders a summary table of lowering results to the console.

  Args:
      results: Dictionary mapping filenames to conversion results.
  """
  total = len(results)
  failures = sum(1 for r in results.values() if not r.success)
  successes = total - failures

  if failures == 0:
    log_success(f"Batch Complete: {successes}/{total} files lowered.")
    return

  table = Table(title="Lowering Report")
  table.add_column("File", style="cyan")
  table.add_column("Status", justify="center")
  table.add_column("Issues", style="red")

  for filename, res in results.items():
    if res.success:
      continue
    issues = "; ".join(res.errors) if res.errors else "Unknown Error"
    table.add_row(filename, "Failed", issues)

  console.print(table)
  console.print(f"\n[bold]Summary:[/bold] {successes} Passed, {failures} with Issues.")
