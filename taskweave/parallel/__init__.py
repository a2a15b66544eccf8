"""
Parallel Execution Module
==========================

This module provides the infrastructure for running a feature's tasks in
parallel: dependency-ordered scheduling, file-overlap safety analysis, and
one isolated git worktree and branch per task.

Main Components:
- GitGateway: Runs git commands with timeouts and serializes ref mutations
- DependencyResolver: Computes parallel execution batches from task dependencies
- detect_file_overlaps: Groups tasks that touch the same files
- diff_analyzer: Checks what a task actually changed against caution and
  never-touch patterns
- WorktreeManager: Manages git worktrees for isolated parallel execution
- BranchController: Creates task branches, rebases and squashes them

Usage:
    from taskweave.parallel import GitGateway, WorktreeManager, BranchController

    gateway = GitGateway(repo_path)
    branches = BranchController(gateway)
    branch = await branches.create_task_branch("phase-1", "T1")
    path = await WorktreeManager(gateway).create_worktree(repo_path, "T1", branch)
"""

from taskweave.parallel.branch_controller import BranchController, RebaseOutcome, task_branch_name
from taskweave.parallel.dependency_resolver import (
    DependencyGraph,
    DependencyNode,
    DependencyResolver,
    ResolutionResult,
    build_graph,
    find_cycle,
    get_blocked_tasks,
    get_ready_tasks,
    get_task_depths,
    topological_sort,
)
from taskweave.parallel.diff_analyzer import (
    ChangedFile,
    ChangedFilesResult,
    CautionFilesResult,
    PatternMatch,
    detect_caution_files,
    detect_never_touch_violations,
    matches_pattern,
)
from taskweave.parallel.git_gateway import GitGateway, GitResult
from taskweave.parallel.overlap_analyzer import (
    FileCollision,
    OverlapResult,
    detect_file_overlaps,
    normalize_path,
    partition_ready,
)
from taskweave.parallel.worktree_manager import WorktreeInfo, WorktreeManager, task_worktree_path, validate_task_id

__all__ = [
    'BranchController',
    'RebaseOutcome',
    'task_branch_name',
    'DependencyGraph',
    'DependencyNode',
    'DependencyResolver',
    'ResolutionResult',
    'build_graph',
    'find_cycle',
    'get_blocked_tasks',
    'get_ready_tasks',
    'get_task_depths',
    'topological_sort',
    'ChangedFile',
    'ChangedFilesResult',
    'CautionFilesResult',
    'PatternMatch',
    'detect_caution_files',
    'detect_never_touch_violations',
    'matches_pattern',
    'GitGateway',
    'GitResult',
    'FileCollision',
    'OverlapResult',
    'detect_file_overlaps',
    'normalize_path',
    'partition_ready',
    'WorktreeInfo',
    'WorktreeManager',
    'task_worktree_path',
    'validate_task_id',
]
