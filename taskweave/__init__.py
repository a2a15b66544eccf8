"""
taskweave
=========

Task dependency and workspace orchestration: orders a feature's tasks,
decides which can run at once without touching the same files, and gives
each task its own git worktree and branch.
"""

__version__ = "0.1.0"
