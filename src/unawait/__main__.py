"""
Entry point for module execution (``python -m unawait``).

This module delegates execution to the CLI handler in ``unawait.cli.__main__``.
"""

import sys
from unawait.cli.__main__ import main

if __name__ == "__main__":
  sys.exit(main())
