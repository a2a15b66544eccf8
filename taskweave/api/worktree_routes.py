"""
Worktree API Routes
===================

REST API endpoints for planning a phase and managing its task worktrees.
Provides operations for building plans, creating, listing, rebasing,
squashing, removing and pruning worktrees, and for checking what a task
branch actually changed.

Rebase conflicts are normal results (HTTP 200 with ``success: false`` and
the conflicting files); the repository is already clean when they return.
"""

from typing import List, Dict, Any, Optional
import logging

from fastapi import APIRouter, HTTPException, Depends, Query, Request
from pydantic import BaseModel, Field

from taskweave.config import Settings
from taskweave.errors import (
    BranchCreateError,
    GitCommandError,
    GitTimeoutError,
    TaskFileError,
    TaskGraphError,
    TaskweaveError,
    WorktreeCreateError,
    WorktreeNotFoundError,
    WorktreeRemoveError,
)
from taskweave.execution_plan import ExecutionPlanBuilder
from taskweave.parallel.branch_controller import BranchController, RebaseOutcome
from taskweave.parallel.diff_analyzer import detect_caution_files, detect_never_touch_violations
from taskweave.parallel.git_gateway import GitGateway
from taskweave.parallel.worktree_manager import WorktreeInfo, WorktreeManager, validate_task_id
from taskweave.tasks.loader import TaskEntry
from taskweave.tasks.models import Task

logger = logging.getLogger(__name__)

router = APIRouter(tags=["worktrees"])


# =============================================================================
# Request/Response Models
# =============================================================================

class WorktreeInfoResponse(BaseModel):
    """Response model for worktree information."""
    path: str
    branch: str
    head_commit: str
    is_detached: bool = False
    is_main: bool = False
    is_locked: bool = False
    is_prunable: bool = False


class PlanRequest(BaseModel):
    """Request model for building an execution plan."""
    tasks: List[TaskEntry]
    phase_id: Optional[str] = Field(None, description="Phase used in branch names (defaults to settings)")
    patterns: bool = Field(False, description="Treat glob entries in files_affected as patterns")


class WorktreeCreateRequest(BaseModel):
    """Request model for creating a task worktree."""
    task_id: str = Field(..., min_length=1)
    phase_id: Optional[str] = Field(None, description="Phase used in the branch name (defaults to settings)")
    base_branch: Optional[str] = Field(None, description="Start point of a new task branch")


class RebaseRequest(BaseModel):
    """Request model for rebasing a task worktree."""
    target_branch: Optional[str] = Field(None, description="Branch to rebase onto (defaults to settings)")


class SquashRequest(BaseModel):
    """Request model for squashing a task worktree."""
    message: str = Field(..., min_length=1)
    base_branch: Optional[str] = Field(None, description="Branch to squash against (defaults to settings)")


class RebaseResponse(BaseModel):
    """Response model for rebase and squash operations."""
    success: bool
    conflict_files: List[str] = Field(default_factory=list)
    error: Optional[str] = None


class NeedsRebaseResponse(BaseModel):
    """Response model for the needs-rebase check."""
    task_id: str
    target_branch: str
    needs_rebase: bool


# =============================================================================
# Dependencies
# =============================================================================

def get_settings() -> Settings:
    """Settings for the request (overridden in tests)."""
    return Settings.from_env()


def get_gateway(request: Request, settings: Settings = Depends(get_settings)) -> GitGateway:
    """
    Gateway for the configured repository.

    One gateway is kept per repository on the application state so its
    mutation lock is shared by every request.
    """
    gateways: Optional[Dict[str, GitGateway]] = getattr(request.app.state, "taskweave_gateways", None)
    if gateways is None:
        gateways = {}
        request.app.state.taskweave_gateways = gateways

    key = str(settings.repo_path.resolve())
    if key not in gateways:
        gateways[key] = settings.make_gateway()
    return gateways[key]


def _to_response(worktree: WorktreeInfo) -> WorktreeInfoResponse:
    return WorktreeInfoResponse(**worktree.to_dict())


def _outcome_response(outcome: RebaseOutcome) -> RebaseResponse:
    return RebaseResponse(**outcome.to_dict())


def _http_error(e: TaskweaveError) -> HTTPException:
    """Map a taskweave error to an HTTP error."""
    if isinstance(e, WorktreeNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, GitTimeoutError):
        return HTTPException(status_code=504, detail=str(e))
    if isinstance(e, (WorktreeCreateError, WorktreeRemoveError, BranchCreateError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, (TaskGraphError, TaskFileError)):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, GitCommandError):
        return HTTPException(status_code=500, detail=f"Git operation failed: {e}")
    return HTTPException(status_code=500, detail=str(e))


async def _task_worktree(manager: WorktreeManager, settings: Settings, task_id: str) -> WorktreeInfo:
    return await manager.get_worktree_info(manager.worktree_path(settings.repo_path, task_id))


# =============================================================================
# API Endpoints
# =============================================================================

@router.post("/api/plan")
async def build_plan(
    request: PlanRequest,
    settings: Settings = Depends(get_settings)
) -> Dict[str, Any]:
    """
    Build an execution plan for a task list.

    Returns batches, per-task branch/worktree assignments and the files
    shared inside each batch.
    """
    builder = ExecutionPlanBuilder(phase_id=request.phase_id or settings.phase_id, patterns=request.patterns)
    try:
        tasks = [Task.from_dict(entry.model_dump()) for entry in request.tasks]
        plan = builder.build_plan(tasks, settings.repo_path)
    except TaskweaveError as e:
        logger.warning(f"Failed to build plan: {e}")
        raise _http_error(e)
    return plan.to_dict()


@router.get("/api/worktrees", response_model=List[WorktreeInfoResponse])
async def list_worktrees(gateway: GitGateway = Depends(get_gateway)):
    """
    List all worktrees registered in the repository.

    The main worktree is included and flagged with ``is_main``.
    """
    try:
        worktrees = await WorktreeManager(gateway).list_worktrees()
    except TaskweaveError as e:
        logger.error(f"Failed to list worktrees: {e}")
        raise _http_error(e)
    return [_to_response(wt) for wt in worktrees]


@router.get("/api/worktrees/{task_id}", response_model=WorktreeInfoResponse)
async def get_worktree(
    task_id: str,
    settings: Settings = Depends(get_settings),
    gateway: GitGateway = Depends(get_gateway)
):
    """Get worktree information for a task."""
    try:
        worktree = await _task_worktree(WorktreeManager(gateway), settings, task_id)
    except TaskweaveError as e:
        raise _http_error(e)
    return _to_response(worktree)


@router.post("/api/worktrees", response_model=WorktreeInfoResponse)
async def create_worktree(
    request: WorktreeCreateRequest,
    settings: Settings = Depends(get_settings),
    gateway: GitGateway = Depends(get_gateway)
):
    """
    Create the branch and worktree for a task.

    Idempotent: calling it again for the same task returns the existing worktree.
    """
    manager = WorktreeManager(gateway)
    branches = BranchController(gateway)
    try:
        validate_task_id(request.task_id)
        base = request.base_branch or await settings.resolve_target_branch(gateway)
        branch = await branches.create_task_branch(
            request.phase_id or settings.phase_id,
            request.task_id,
            base_branch=base
        )
        path = await manager.create_worktree(settings.repo_path, request.task_id, branch)
        worktree = await manager.get_worktree_info(path)
    except TaskweaveError as e:
        logger.error(f"Failed to create worktree for task {request.task_id}: {e}")
        raise _http_error(e)
    return _to_response(worktree)


@router.delete("/api/worktrees/{task_id}")
async def remove_worktree(
    task_id: str,
    force: bool = False,
    settings: Settings = Depends(get_settings),
    gateway: GitGateway = Depends(get_gateway)
):
    """
    Remove a task's worktree.

    Refuses (409) when the worktree has uncommitted changes unless ``force`` is set.
    """
    manager = WorktreeManager(gateway)
    try:
        await manager.remove_worktree(manager.worktree_path(settings.repo_path, task_id), force=force)
    except TaskweaveError as e:
        logger.warning(f"Failed to remove worktree for task {task_id}: {e}")
        raise _http_error(e)
    return {"message": f"Removed worktree for task {task_id}"}


@router.post("/api/worktrees/prune")
async def prune_worktrees(gateway: GitGateway = Depends(get_gateway)):
    """Clear registrations for worktrees whose directories are gone."""
    await WorktreeManager(gateway).prune_worktrees()
    return {"message": "Pruned stale worktrees"}


@router.get("/api/worktrees/{task_id}/needs-rebase", response_model=NeedsRebaseResponse)
async def needs_rebase(
    task_id: str,
    target_branch: Optional[str] = None,
    settings: Settings = Depends(get_settings),
    gateway: GitGateway = Depends(get_gateway)
):
    """Check whether the target branch moved ahead of the task branch."""
    try:
        worktree = await _task_worktree(WorktreeManager(gateway), settings, task_id)
        target = target_branch or await settings.resolve_target_branch(gateway)
        result = await BranchController(gateway).needs_rebase(target, cwd=worktree.path)
    except TaskweaveError as e:
        raise _http_error(e)
    return NeedsRebaseResponse(task_id=task_id, target_branch=target, needs_rebase=result)


@router.post("/api/worktrees/{task_id}/rebase", response_model=RebaseResponse)
async def rebase_worktree(
    task_id: str,
    request: RebaseRequest,
    settings: Settings = Depends(get_settings),
    gateway: GitGateway = Depends(get_gateway)
):
    """
    Rebase a task's branch onto the target branch.

    A conflict returns ``success: false`` with the conflicting files; the
    rebase has already been aborted.
    """
    try:
        worktree = await _task_worktree(WorktreeManager(gateway), settings, task_id)
        target = request.target_branch or await settings.resolve_target_branch(gateway)
        outcome = await BranchController(gateway).rebase_onto_target(target, cwd=worktree.path)
    except TaskweaveError as e:
        logger.error(f"Rebase failed for task {task_id}: {e}")
        raise _http_error(e)

    if outcome.has_conflicts:
        logger.warning(f"Rebase conflict for task {task_id}: {outcome.conflict_files}")
    return _outcome_response(outcome)


@router.post("/api/worktrees/{task_id}/squash", response_model=RebaseResponse)
async def squash_worktree(
    task_id: str,
    request: SquashRequest,
    settings: Settings = Depends(get_settings),
    gateway: GitGateway = Depends(get_gateway)
):
    """Squash a task branch's commits into one before integration."""
    try:
        worktree = await _task_worktree(WorktreeManager(gateway), settings, task_id)
        base = request.base_branch or await settings.resolve_target_branch(gateway)
        outcome = await BranchController(gateway).squash_commits(base, request.message, cwd=worktree.path)
    except TaskweaveError as e:
        raise _http_error(e)
    return _outcome_response(outcome)


@router.get("/api/worktrees/{task_id}/changes")
async def get_worktree_changes(
    task_id: str,
    target_branch: Optional[str] = None,
    caution: List[str] = Query(default=[]),
    never_touch: List[str] = Query(default=[]),
    settings: Settings = Depends(get_settings),
    gateway: GitGateway = Depends(get_gateway)
) -> Dict[str, Any]:
    """
    Files a task's branch actually changed since it left the target branch.

    Changed paths are checked against ``caution`` (review required) and
    ``never_touch`` (forbidden) patterns.
    """
    try:
        worktree = await _task_worktree(WorktreeManager(gateway), settings, task_id)
        target = target_branch or await settings.resolve_target_branch(gateway)
        changes = await BranchController(gateway).get_changed_files_detailed(target, cwd=worktree.path)
    except TaskweaveError as e:
        raise _http_error(e)

    return {
        "task_id": task_id,
        "target_branch": target,
        "changes": changes.to_dict(),
        "caution": detect_caution_files(changes.paths, caution).to_dict(),
        "never_touch_violations": [v.to_dict() for v in detect_never_touch_violations(changes.paths, never_touch)],
    }
