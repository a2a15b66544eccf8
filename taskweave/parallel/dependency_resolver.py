"""
Dependency Resolver
===================

Builds task dependency graphs and orders them for execution using
topological sorting (Kahn's algorithm).

Key Features:
- Validates every depends_on reference at graph construction time
- Deterministic topological order; reports the offending path on cycles
- Ready/blocked queries against a caller-owned completed set
- Dependency depth and critical path for visualization
- Priority ordered parallel batches with Mermaid and ASCII rendering

All graph walks use explicit stacks, so arbitrarily deep dependency chains
never hit the interpreter recursion limit.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import AbstractSet, Dict, Iterable, Iterator, List, Optional
import logging

from taskweave.errors import CyclicDependencyError, DuplicateTaskIdError, UnknownDependencyError
from taskweave.tasks.models import Task

logger = logging.getLogger(__name__)


@dataclass
class DependencyNode:
    """
    Node in the dependency graph.

    Attributes:
        task: The task this node owns
        depends_on: Ids this task waits for
        depended_by: Ids waiting for this task (computed reverse edge)
    """
    task: Task
    depends_on: List[str] = field(default_factory=list)
    depended_by: List[str] = field(default_factory=list)

    @property
    def task_id(self) -> str:
        return self.task.id


class DependencyGraph:
    """
    Directed graph of tasks keyed by task id.

    Iteration follows the order tasks were given to build_graph().
    """

    def __init__(self, nodes: Optional[Dict[str, DependencyNode]] = None):
        self.nodes: Dict[str, DependencyNode] = nodes if nodes is not None else {}

    def __len__(self) -> int:
        return len(self.nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(self.nodes)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.nodes

    def __getitem__(self, task_id: str) -> DependencyNode:
        return self.nodes[task_id]

    def get(self, task_id: str) -> Optional[DependencyNode]:
        return self.nodes.get(task_id)

    @property
    def tasks(self) -> List[Task]:
        return [node.task for node in self.nodes.values()]


def build_graph(tasks: Iterable[Task]) -> DependencyGraph:
    """
    Build a dependency graph from a task list.

    Args:
        tasks: Tasks in their natural order

    Returns:
        DependencyGraph with forward and reverse edges

    Raises:
        DuplicateTaskIdError: If two tasks share an id
        UnknownDependencyError: If a dependency does not resolve to a task
    """
    task_list = list(tasks)
    graph = DependencyGraph()

    for task in task_list:
        if task.id in graph.nodes:
            raise DuplicateTaskIdError(task.id)
        graph.nodes[task.id] = DependencyNode(task=task, depends_on=list(task.depends_on))

    for task in task_list:
        for dep_id in task.depends_on:
            dep_node = graph.nodes.get(dep_id)
            if dep_node is None:
                raise UnknownDependencyError(task.id, dep_id)
            dep_node.depended_by.append(task.id)

    logger.debug(f"Built dependency graph with {len(graph)} nodes")
    return graph


def find_cycle(graph: DependencyGraph) -> Optional[List[str]]:
    """
    Find one dependency cycle using depth-first search.

    Returns:
        The cycle path from the first repeated node through its repeat
        (e.g. ['A', 'B', 'C', 'A']), or None if the graph is acyclic
    """
    visited: set = set()

    for start in graph:
        if start in visited:
            continue

        visited.add(start)
        path = [start]
        on_path = {start}
        stack = [iter(graph[start].depends_on)]

        while stack:
            dep_id = next(stack[-1], None)
            if dep_id is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            if dep_id not in graph:
                continue
            if dep_id in on_path:
                cycle_start = path.index(dep_id)
                return path[cycle_start:] + [dep_id]
            if dep_id not in visited:
                visited.add(dep_id)
                path.append(dep_id)
                on_path.add(dep_id)
                stack.append(iter(graph[dep_id].depends_on))

    return None


def topological_sort(graph: DependencyGraph) -> List[Task]:
    """
    Order tasks so every task comes after all of its dependencies.

    Nodes with equal standing keep graph iteration order.

    Raises:
        CyclicDependencyError: If the graph contains a cycle
    """
    if len(graph) == 0:
        return []

    in_degree: Dict[str, int] = {tid: len(node.depends_on) for tid, node in graph.nodes.items()}
    queue = deque(tid for tid, degree in in_degree.items() if degree == 0)
    result: List[Task] = []

    while queue:
        task_id = queue.popleft()
        node = graph[task_id]
        result.append(node.task)

        for dependent_id in node.depended_by:
            in_degree[dependent_id] -= 1
            if in_degree[dependent_id] == 0:
                queue.append(dependent_id)

    if len(result) != len(graph):
        cycle = find_cycle(graph)
        logger.warning(f"Circular dependencies detected: {cycle}")
        raise CyclicDependencyError(cycle or [tid for tid, d in in_degree.items() if d > 0])

    return result


def get_ready_tasks(graph: DependencyGraph, completed_ids: AbstractSet[str]) -> List[Task]:
    """Tasks not yet completed whose dependencies are all completed."""
    return [
        node.task
        for task_id, node in graph.nodes.items()
        if task_id not in completed_ids
        and all(dep_id in completed_ids for dep_id in node.depends_on)
    ]


def get_blocked_tasks(graph: DependencyGraph, completed_ids: AbstractSet[str]) -> List[Task]:
    """Tasks not yet completed that still wait on at least one dependency."""
    return [
        node.task
        for task_id, node in graph.nodes.items()
        if task_id not in completed_ids
        and any(dep_id not in completed_ids for dep_id in node.depends_on)
    ]


def get_task_depths(graph: DependencyGraph) -> Dict[str, int]:
    """
    Longest dependency chain length to each task.

    A task without dependencies has depth 0; otherwise its depth is one more
    than the deepest dependency.

    Raises:
        CyclicDependencyError: If the graph contains a cycle
    """
    cycle = find_cycle(graph)
    if cycle:
        raise CyclicDependencyError(cycle)

    depths: Dict[str, int] = {}
    for root in graph:
        stack = [root]
        while stack:
            task_id = stack[-1]
            if task_id in depths:
                stack.pop()
                continue

            deps = graph[task_id].depends_on
            pending = [dep_id for dep_id in deps if dep_id not in depths]
            if pending:
                stack.extend(pending)
                continue

            stack.pop()
            depths[task_id] = 1 + max(depths[dep_id] for dep_id in deps) if deps else 0

    return depths


@dataclass
class ResolutionResult:
    """
    Result of dependency resolution.

    Attributes:
        batches: Task id batches; tasks within a batch have no dependency on
            each other and may run in parallel
        task_order: Flattened list of all task ids in execution order
    """
    batches: List[List[str]]
    task_order: List[str]


class DependencyResolver:
    """
    Resolves task dependencies into parallel execution batches.

    Uses Kahn's algorithm level by level: each batch holds every task whose
    dependencies were all satisfied by earlier batches, ordered by priority
    ("must" first) and then by input order.
    """

    def __init__(self):
        self.last_result: ResolutionResult | None = None
        self.last_graph: DependencyGraph | None = None

    def resolve(self, tasks: Iterable[Task]) -> ResolutionResult:
        """
        Resolve dependencies and compute parallel batches.

        Args:
            tasks: Tasks to resolve

        Returns:
            ResolutionResult with batches and flattened order

        Raises:
            UnknownDependencyError, DuplicateTaskIdError: On malformed input
            CyclicDependencyError: If the graph contains a cycle
        """
        graph = build_graph(tasks)
        if len(graph) == 0:
            logger.info("No tasks provided, returning empty resolution")
            result = ResolutionResult(batches=[], task_order=[])
            self.last_graph, self.last_result = graph, result
            return result

        position = {tid: idx for idx, tid in enumerate(graph)}

        def order_key(task_id: str):
            return (graph[task_id].task.priority_rank, position[task_id])

        in_degree = {tid: len(node.depends_on) for tid, node in graph.nodes.items()}
        queue = sorted((tid for tid, d in in_degree.items() if d == 0), key=order_key)

        batches: List[List[str]] = []
        task_order: List[str] = []

        while queue:
            batches.append(queue)
            task_order.extend(queue)

            next_queue = []
            for task_id in queue:
                for dependent_id in graph[task_id].depended_by:
                    in_degree[dependent_id] -= 1
                    if in_degree[dependent_id] == 0:
                        next_queue.append(dependent_id)

            queue = sorted(next_queue, key=order_key)

        if len(task_order) != len(graph):
            cycle = find_cycle(graph)
            logger.warning(f"Circular dependencies detected: {cycle}")
            raise CyclicDependencyError(cycle or [tid for tid, d in in_degree.items() if d > 0])

        logger.info(f"Resolved {len(graph)} tasks into {len(batches)} parallel batches")
        logger.debug(f"Batch sizes: {[len(b) for b in batches]}")

        result = ResolutionResult(batches=batches, task_order=task_order)
        self.last_graph, self.last_result = graph, result
        return result

    def batch_of(self, task_id: str) -> Optional[int]:
        """Index of the batch containing task_id in the last resolution."""
        if not self.last_result:
            return None
        for idx, batch in enumerate(self.last_result.batches):
            if task_id in batch:
                return idx
        return None

    def get_critical_path(self) -> List[str]:
        """
        Identify the longest dependency chain (critical path).

        Returns:
            Task ids from the first task of the chain to the last
        """
        if not self.last_result or not self.last_graph or not self.last_result.task_order:
            return []

        graph = self.last_graph
        # longest[task_id] = (chain length below this task, next task on that chain)
        longest: Dict[str, tuple[int, str | None]] = {}

        for task_id in reversed(self.last_result.task_order):
            best_length = 0
            best_next = None
            for dependent_id in graph[task_id].depended_by:
                length = longest[dependent_id][0] + 1
                if length > best_length:
                    best_length = length
                    best_next = dependent_id
            longest[task_id] = (best_length, best_next)

        # max() keeps the first maximum, so ties resolve to execution order
        start = max(self.last_result.task_order, key=lambda tid: longest[tid][0])

        path = []
        current: str | None = start
        while current is not None:
            path.append(current)
            current = longest[current][1]

        logger.info(f"Critical path length: {len(path)} tasks")
        return path

    def to_mermaid(self, batch_filter: int | None = None) -> str:
        """
        Generate a Mermaid flowchart of the last resolution.

        Args:
            batch_filter: Optional batch index to restrict the diagram to

        Returns:
            Mermaid diagram string
        """
        if not self.last_result or not self.last_graph or len(self.last_graph) == 0:
            return "graph TD\n  Empty[No dependency graph available]"

        graph = self.last_graph
        node_names = {tid: f"T{idx}" for idx, tid in enumerate(graph)}

        tasks_to_show = list(graph)
        if batch_filter is not None and 0 <= batch_filter < len(self.last_result.batches):
            tasks_to_show = list(self.last_result.batches[batch_filter])
        shown = set(tasks_to_show)

        lines = ["graph TD"]
        for task_id in tasks_to_show:
            task = graph[task_id].task
            label = task.title or task_id
            # Sanitize for Mermaid
            label = label.replace('"', "'").replace('[', '(').replace(']', ')')
            if len(label) > 40:
                label = label[:37] + "..."
            batch_num = self.batch_of(task_id)
            lines.append(f'  {node_names[task_id]}["{task_id}: {label}<br/>Batch {batch_num}"]')

        for task_id in tasks_to_show:
            for dependent_id in graph[task_id].depended_by:
                if dependent_id in shown:
                    lines.append(f'  {node_names[task_id]} --> {node_names[dependent_id]}')

        return '\n'.join(lines)

    def to_ascii(self, batch_filter: int | None = None) -> str:
        """
        Generate an ASCII text rendering of the last resolution.

        Args:
            batch_filter: Optional batch index to restrict the output to

        Returns:
            ASCII diagram string
        """
        if not self.last_result or not self.last_graph:
            return "No dependency graph available"

        graph = self.last_graph
        depths = get_task_depths(graph)

        batches_to_show = list(enumerate(self.last_result.batches))
        if batch_filter is not None and 0 <= batch_filter < len(self.last_result.batches):
            batches_to_show = [(batch_filter, self.last_result.batches[batch_filter])]

        lines = []
        lines.append("=" * 70)
        lines.append("DEPENDENCY GRAPH")
        lines.append("=" * 70)

        for batch_num, batch in batches_to_show:
            lines.append(f"\nBATCH {batch_num} (can run in parallel):")
            lines.append("-" * 70)

            for task_id in batch:
                task = graph[task_id].task
                lines.append(f"  [{task_id}] {task.title or task_id}")
                lines.append(f"      Priority: {task.priority}  Depth: {depths[task_id]}")
                if task.depends_on:
                    lines.append(f"      Depends on: {', '.join(task.depends_on)}")
                else:
                    lines.append("      Depends on: None")

        critical = self.get_critical_path()
        if critical:
            lines.append(f"\nCritical path: {' -> '.join(critical)}")

        lines.append("\n" + "=" * 70)
        lines.append(f"Total: {len(graph)} tasks in {len(self.last_result.batches)} batches")
        lines.append("=" * 70)

        return '\n'.join(lines)
