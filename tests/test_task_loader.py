"""
Test task file loading and validation
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from taskweave.errors import DuplicateTaskIdError, TaskFileError
from taskweave.tasks.loader import load_tasks, parse_tasks, tasks_to_yaml
from taskweave.tasks.models import Task


TASKS_YAML = """
tasks:
  - id: T1
    title: Set up schema
    files_affected: [db/schema.sql]
    priority: must
  - id: T2
    title: Add API
    depends_on: [T1]
    files_affected:
      - src/api.py
      - db/schema.sql
    complexity: 3
"""

MARKDOWN = """# Feature: Login

Some prose that is not part of the task list.

```yaml
not: tasks
```

## Agent Tasks

```yaml
tasks:
  - id: login-form
    depends_on: []
  - id: login-api
    depends_on: login-form
```
"""


class TestParseTasks:
    """Tests for parsing task documents."""

    def test_tasks_mapping(self):
        tasks = parse_tasks(TASKS_YAML)

        assert [t.id for t in tasks] == ["T1", "T2"]
        assert tasks[0].priority == "must"
        assert tasks[1].depends_on == ("T1",)
        assert tasks[1].files_affected == ("src/api.py", "db/schema.sql")
        assert tasks[1].complexity == 3
        assert tasks[1].priority == "should"

    def test_plain_list_and_numeric_ids(self):
        tasks = parse_tasks("- id: 1\n- id: 2\n  depends_on: [1]\n")

        assert [t.id for t in tasks] == ["1", "2"]
        assert tasks[1].depends_on == ("1",)

    def test_markdown_agent_tasks_block(self):
        """Only the yaml block after the Agent Tasks heading is read."""
        tasks = parse_tasks(MARKDOWN, source="feature.md")

        assert [t.id for t in tasks] == ["login-form", "login-api"]
        assert tasks[1].depends_on == ("login-form",)

    def test_markdown_heading_without_block(self):
        with pytest.raises(TaskFileError) as exc_info:
            parse_tasks("## Agent Tasks\n\nnothing here\n", source="feature.md")

        assert exc_info.value.source == "feature.md"

    def test_empty_document(self):
        assert parse_tasks("") == []
        assert parse_tasks("tasks:\n") == []

    def test_invalid_yaml(self):
        with pytest.raises(TaskFileError) as exc_info:
            parse_tasks("tasks: [unclosed")

        assert "Invalid YAML" in exc_info.value.reason

    def test_wrong_shape(self):
        with pytest.raises(TaskFileError):
            parse_tasks("tasks: 3")
        with pytest.raises(TaskFileError):
            parse_tasks("- just a string")

    @pytest.mark.parametrize("entry,field", [
        ("- title: no id", "id"),
        ("- id: T1\n  priority: urgent", "priority"),
        ("- id: T1\n  complexity: 0", "complexity"),
    ])
    def test_validation_errors(self, entry, field):
        with pytest.raises(TaskFileError) as exc_info:
            parse_tasks(entry)

        print(f"Reason: {exc_info.value.reason}")
        assert field in exc_info.value.reason

    def test_duplicate_ids(self):
        with pytest.raises(DuplicateTaskIdError):
            parse_tasks("- id: T1\n- id: T1\n")


class TestLoadTasks:
    """Tests for reading task files from disk."""

    def test_load(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text(TASKS_YAML)

        assert len(load_tasks(path)) == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(TaskFileError) as exc_info:
            load_tasks(tmp_path / "missing.yaml")

        assert exc_info.value.reason == "File not found"

    def test_yaml_round_trip(self):
        tasks = [Task(id="A", files_affected=["a.py"]), Task(id="B", depends_on=["A"], priority="could")]
        loaded = parse_tasks(tasks_to_yaml(tasks))

        assert [t.to_dict() for t in loaded] == [t.to_dict() for t in tasks]


class TestTaskModel:
    """Tests for the Task value type."""

    def test_identity_by_id(self):
        assert Task(id="A", title="one") == Task(id="A", title="two")
        assert len({Task(id="A"), Task(id="A"), Task(id="B")}) == 2

    def test_lists_become_tuples(self):
        task = Task(id="A", depends_on=["B"], files_affected=["x.py"])
        assert task.depends_on == ("B",)
        assert task.files_affected == ("x.py",)

    def test_priority_rank(self):
        assert Task(id="A", priority="must").priority_rank < Task(id="B").priority_rank
        assert Task(id="B").priority_rank < Task(id="C", priority="could").priority_rank
