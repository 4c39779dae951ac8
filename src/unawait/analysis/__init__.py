"""
Static analyses over libcst trees: suspension points, reachability,
bindings and synchronous exceptions.
"""
