"""HTTP API for plans and task worktrees."""

from fastapi import FastAPI

from taskweave.api.worktree_routes import router


def create_app() -> FastAPI:
    """Application with the worktree routes mounted."""
    app = FastAPI(title="taskweave")
    app.include_router(router)
    return app


__all__ = ['create_app', 'router']
