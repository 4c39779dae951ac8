"""
Main Entry Point for the unawait CLI.

This module handles argument parsing and dispatches to the command handlers
defined in `unawait.cli.lower`.
"""

import argparse
from pathlib import Path
from typing import List, Optional

from unawait import __version__
from unawait.cli.lower import handle_lower
from unawait.enums import LoweringTarget
from unawait.utils.console import set_verbosity


def main(argv: Optional[List[str]] = None) -> int:
  """
  Main CLI entry point.

  Args:
      argv: Optional list of command line arguments (defaults to sys.argv).

  Returns:
      int: Exit code (0 for success, non-zero for failure).
  """
  parser = argparse.ArgumentParser(description="unawait: lowers async/await into continuation-passing code")
  parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
  parser.add_argument("-v", "--verbose", action="count", default=0, help="Report each lowered function")
  parser.add_argument("-q", "--quiet", action="store_true", help="Only report errors")

  subparsers = parser.add_subparsers(dest="command", required=True)

  # --- Command: LOWER ---
  cmd_lower = subparsers.add_parser("lower", help="Lower the async functions of a Python file or directory")
  cmd_lower.add_argument("path", type=Path, help="Input source file or directory")
  cmd_lower.add_argument("--out", type=Path, help="Output destination (file or dir)")
  cmd_lower.add_argument(
    "--inline-helpers",
    action="store_true",
    default=None,
    help="Copy the runtime helpers into the output instead of importing them (Overrides config)",
  )
  cmd_lower.add_argument(
    "--hoist",
    action="store_true",
    default=None,
    help="Lift closures that capture nothing to module level (Overrides config)",
  )
  cmd_lower.add_argument(
    "--target",
    choices=[t.value for t in LoweringTarget],
    default=None,
    help="Closure flavour of the generated code (default: from toml)",
  )
  cmd_lower.add_argument("--config", type=Path, default=None, help="Read settings from this pyproject.toml")
  cmd_lower.add_argument(
    "--json-trace", type=Path, default=None, help="Dump full execution trace (events, diffs) to a JSON file."
  )

  args = parser.parse_args(argv)
  set_verbosity(-1 if args.quiet else args.verbose)

  if args.command == "lower":
    return handle_lower(
      args.path,
      args.out,
      inline_helpers=args.inline_helpers,
      hoist=args.hoist,
      target=args.target,
      config_file=args.config,
      json_trace_path=args.json_trace,
    )

  return 1


if __name__ == "__main__":
  raise SystemExit(main())
