"""
Shared utilities (console output, source rendering).
"""
