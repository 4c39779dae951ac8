"""
CLI Subpackage.

Contains the application entry-point for the command-line interface.

Modules:
    - ``__main__``: The argparse definition and dispatcher.
    - ``lower``: Implementation of the ``lower`` command.
"""
