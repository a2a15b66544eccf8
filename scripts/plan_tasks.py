#!/usr/bin/env python3
"""
Plan Tasks

Prints the execution plan for a task file: parallel batches, the branch and
worktree each task would use, files shared inside a batch and the critical
path. With --mermaid, prints the dependency graph as a Mermaid flowchart.

Usage:
    python scripts/plan_tasks.py tasks.yaml
    python scripts/plan_tasks.py docs/feature.md --graph
    python scripts/plan_tasks.py tasks.yaml --mermaid --batch 1
"""

import argparse
import json
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()

from taskweave.config import Settings, configure_logging
from taskweave.errors import TaskweaveError
from taskweave.execution_plan import ExecutionPlanBuilder, describe_plan
from taskweave.tasks.loader import load_tasks


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Print the execution plan for a task file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Batches and worktree assignments
  python scripts/plan_tasks.py tasks.yaml

  # ASCII dependency graph
  python scripts/plan_tasks.py tasks.yaml --graph

  # Mermaid flowchart of batch 0 only
  python scripts/plan_tasks.py tasks.yaml --mermaid --batch 0
        """
    )
    parser.add_argument('task_file', help='YAML task list or markdown file with an Agent Tasks block')
    parser.add_argument('--phase', default=None, help='Phase id used in branch names (default: TASKWEAVE_PHASE_ID)')
    parser.add_argument('--base-path', default=None, help='Directory worktrees are placed under (default: TASKWEAVE_REPO_PATH)')
    parser.add_argument('--graph', action='store_true', help='Print the ASCII dependency graph')
    parser.add_argument('--mermaid', action='store_true', help='Print a Mermaid flowchart')
    parser.add_argument('--json', action='store_true', help='Print the plan as JSON')
    parser.add_argument('--batch', type=int, default=None, help='Restrict graph output to one batch')
    parser.add_argument('--patterns', action='store_true', help='Treat glob entries in files_affected as patterns')
    args = parser.parse_args(argv)

    try:
        settings = Settings.from_env(dotenv=False)
        configure_logging(settings.log_level)
    except ValueError as e:
        print(f"Error: {e}")
        return 2

    builder = ExecutionPlanBuilder(phase_id=args.phase or settings.phase_id, patterns=args.patterns)

    try:
        tasks = load_tasks(args.task_file)
        plan = builder.build_plan(tasks, args.base_path or settings.repo_path)
    except TaskweaveError as e:
        print(f"Error: {e}")
        return 1

    if args.mermaid:
        print(builder.resolver.to_mermaid(batch_filter=args.batch))
    elif args.graph:
        print(builder.resolver.to_ascii(batch_filter=args.batch))
    elif args.json:
        print(json.dumps(plan.to_dict(), indent=2))
    else:
        print(describe_plan(plan, tasks))

    return 0


if __name__ == "__main__":
    sys.exit(main())
