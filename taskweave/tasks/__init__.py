"""Task model and task file loading."""

from taskweave.tasks.models import Task, PRIORITY_ORDER
from taskweave.tasks.loader import load_tasks, parse_tasks, tasks_to_yaml

__all__ = [
    'Task',
    'PRIORITY_ORDER',
    'load_tasks',
    'parse_tasks',
    'tasks_to_yaml',
]
