"""
Core Package.

Contains the lowering logic:
- Lowering Engine and function driver
- Rewriting mixins (flattener, restructurer, exit normalizer)
- Desugaring, scope fixing and hoisting passes
- Helper registry, name generation and tracing
"""
