"""
Pool Admin module.

Command-line tools for inspecting the pool's persisted state.
"""
