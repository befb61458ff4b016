import os
import sqlite3
import uuid
from datetime import datetime
from typing import Optional
from contextlib import contextmanager

from pydantic import ValidationError

from models import Goal, ProgressLog, Project, Task, as_local_naive

DATABASE_PATH = os.getenv("DATABASE_PATH", "taskzen.db")


class StoreReadError(Exception):
    """The task list could not be read (database unreachable or malformed rows)."""


class TaskNotFoundError(Exception):
    pass


@contextmanager
def get_db():
    """Context manager for database connections."""
    conn = sqlite3.connect(DATABASE_PATH)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        yield conn
    finally:
        conn.close()


def init_db():
    """Initialize database by running Alembic migrations."""
    import subprocess

    # Run alembic upgrade from the backend directory
    backend_dir = os.path.dirname(os.path.abspath(__file__))
    env = {**os.environ, "DATABASE_PATH": os.path.abspath(DATABASE_PATH)}
    subprocess.run(
        ["alembic", "upgrade", "head"],
        cwd=backend_dir,
        env=env,
        check=True
    )


def _now_iso() -> str:
    return datetime.now().isoformat()


def _serialize_due_date(due_date: Optional[datetime]) -> Optional[str]:
    if due_date is None:
        return None
    return as_local_naive(due_date).isoformat(timespec="minutes")


# Projects
def _row_to_project(row) -> Project:
    return Project(id=row["id"], name=row["name"], created_at=row["created_at"])


def create_project_db(project_id: str, name: str) -> Project:
    created_at = _now_iso()
    with get_db() as conn:
        conn.execute(
            "INSERT INTO projects (id, name, created_at) VALUES (?, ?, ?)",
            (project_id, name, created_at)
        )
        conn.commit()
    return Project(id=project_id, name=name, created_at=created_at)


def get_all_projects() -> list[Project]:
    with get_db() as conn:
        rows = conn.execute("SELECT * FROM projects ORDER BY created_at").fetchall()
        return [_row_to_project(row) for row in rows]


def delete_project_db(project_id: str) -> bool:
    """Delete a project. Its tasks are kept and detached from it."""
    with get_db() as conn:
        conn.execute("UPDATE tasks SET project_id = NULL WHERE project_id = ?", (project_id,))
        cursor = conn.execute("DELETE FROM projects WHERE id = ?", (project_id,))
        conn.commit()
        return cursor.rowcount > 0


# Tags
def find_or_create_tags(conn, tag_names: list[str]) -> list[str]:
    """
    Resolve tag names to tag ids, creating missing tags.
    Names are lowercased, trimmed and de-duplicated; blanks are dropped.
    Caller commits.
    """
    unique_names: list[str] = []
    for name in tag_names:
        cleaned = name.strip().lower()
        if cleaned and cleaned not in unique_names:
            unique_names.append(cleaned)

    tag_ids = []
    for name in unique_names:
        row = conn.execute("SELECT id FROM tags WHERE name = ?", (name,)).fetchone()
        if row:
            tag_ids.append(row["id"])
        else:
            tag_id = str(uuid.uuid4())
            conn.execute(
                "INSERT INTO tags (id, name, created_at) VALUES (?, ?, ?)",
                (tag_id, name, _now_iso())
            )
            tag_ids.append(tag_id)
    return tag_ids


def _set_task_tags(conn, task_id: str, tag_names: list[str]):
    tag_ids = find_or_create_tags(conn, tag_names)
    conn.execute("DELETE FROM task_tags WHERE task_id = ?", (task_id,))
    conn.executemany(
        "INSERT INTO task_tags (task_id, tag_id) VALUES (?, ?)",
        [(task_id, tag_id) for tag_id in tag_ids]
    )


def get_all_tags() -> list[str]:
    with get_db() as conn:
        rows = conn.execute("SELECT name FROM tags ORDER BY name").fetchall()
        return [row["name"] for row in rows]


# Tasks
def _row_to_task(row, tags: list[str], progress: list[ProgressLog]) -> Task:
    """Convert a database row plus its tags and progress to a Task model."""
    goal = None
    if row["goal_type"]:
        goal = Goal(type=row["goal_type"], target=row["goal_target"], unit=row["goal_unit"])
    return Task(
        id=row["id"],
        title=row["title"],
        description=row["description"],
        completed=bool(row["completed"]),
        due_date=row["due_date"],
        project_id=row["project_id"],
        tags=tags,
        recurrence=row["recurrence"],
        goal=goal,
        progress=progress,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _load_tags(conn, task_ids: list[str]) -> dict[str, list[str]]:
    tags: dict[str, list[str]] = {task_id: [] for task_id in task_ids}
    rows = conn.execute("""
        SELECT task_tags.task_id, tags.name FROM task_tags
        JOIN tags ON tags.id = task_tags.tag_id
        ORDER BY tags.name
    """).fetchall()
    for row in rows:
        if row["task_id"] in tags:
            tags[row["task_id"]].append(row["name"])
    return tags


def _load_progress(conn, task_ids: list[str]) -> dict[str, list[ProgressLog]]:
    progress: dict[str, list[ProgressLog]] = {task_id: [] for task_id in task_ids}
    rows = conn.execute("SELECT task_id, date, value FROM progress_logs ORDER BY date").fetchall()
    for row in rows:
        if row["task_id"] in progress:
            progress[row["task_id"]].append(ProgressLog(date=row["date"], value=row["value"]))
    return progress


def _fetch_tasks(conn, where: str = "", params: tuple = ()) -> list[Task]:
    rows = conn.execute(
        f"SELECT * FROM tasks {where} ORDER BY created_at DESC, rowid DESC", params
    ).fetchall()
    task_ids = [row["id"] for row in rows]
    tags = _load_tags(conn, task_ids)
    progress = _load_progress(conn, task_ids)
    return [_row_to_task(row, tags[row["id"]], progress[row["id"]]) for row in rows]


def get_all_tasks() -> list[Task]:
    """All tasks, newest first, with tags and progress populated."""
    with get_db() as conn:
        return _fetch_tasks(conn)


def get_task_db(task_id: str) -> Optional[Task]:
    with get_db() as conn:
        tasks = _fetch_tasks(conn, "WHERE id = ?", (task_id,))
        return tasks[0] if tasks else None


def list_active_tasks(now: Optional[datetime] = None) -> list[Task]:
    """
    Task list read by the reminder evaluator.
    Returns every task, completed ones included; the evaluator filters.
    Any failure to read or parse is raised as StoreReadError.
    """
    try:
        return get_all_tasks()
    except (sqlite3.Error, ValidationError, ValueError, KeyError) as e:
        raise StoreReadError(f"Could not read tasks: {e}") from e


def create_task_db(
    task_id: str,
    title: str,
    description: Optional[str] = None,
    due_date: Optional[datetime] = None,
    project_id: Optional[str] = None,
    tags: Optional[list[str]] = None,
    recurrence: Optional[str] = None,
    goal: Optional[Goal] = None,
) -> Task:
    """Create a task.
    Recurring tasks are goal-driven and never keep a due date.
    """
    if recurrence:
        due_date = None
    else:
        recurrence = None
    now = _now_iso()

    with get_db() as conn:
        conn.execute(
            """INSERT INTO tasks
               (id, title, description, completed, due_date, project_id, recurrence,
                goal_type, goal_target, goal_unit, created_at, updated_at)
               VALUES (?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task_id, title, description, _serialize_due_date(due_date), project_id, recurrence,
                goal.type if goal else None,
                goal.target if goal else None,
                goal.unit if goal else None,
                now, now,
            )
        )
        if tags:
            _set_task_tags(conn, task_id, tags)
        conn.commit()

    return get_task_db(task_id)


def update_task_db(task_id: str, **updates) -> Optional[Task]:
    """
    Update a task with any fields provided.
    Only updates columns that differ from current values.

    Args:
        task_id: Task ID to update
        **updates: title, description, completed, due_date, project_id,
            recurrence, goal, tags
    """
    with get_db() as conn:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            return None

        columns: dict = {}
        for field, new_value in updates.items():
            if field == "tags":
                continue
            if field == "goal":
                goal = Goal.model_validate(new_value) if new_value is not None else None
                columns["goal_type"] = goal.type if goal else None
                columns["goal_target"] = goal.target if goal else None
                columns["goal_unit"] = goal.unit if goal else None
            elif field == "due_date":
                columns["due_date"] = _serialize_due_date(new_value)
            elif field == "completed":
                columns["completed"] = int(bool(new_value))
            elif field == "recurrence":
                columns["recurrence"] = new_value or None
            elif field in row.keys():
                columns[field] = new_value

        # A recurring task never keeps a due date
        recurrence = columns.get("recurrence", row["recurrence"])
        if recurrence:
            columns["due_date"] = None

        changes = {field: value for field, value in columns.items() if row[field] != value}
        tags = updates.get("tags")

        if changes or tags is not None:
            changes["updated_at"] = _now_iso()
            set_clause = ", ".join(f"{field} = ?" for field in changes.keys())
            values = list(changes.values()) + [task_id]
            conn.execute(f"UPDATE tasks SET {set_clause} WHERE id = ?", values)
            if tags is not None:
                _set_task_tags(conn, task_id, tags)
            conn.commit()

    return get_task_db(task_id)


def delete_task_db(task_id: str) -> bool:
    with get_db() as conn:
        conn.execute("DELETE FROM task_tags WHERE task_id = ?", (task_id,))
        conn.execute("DELETE FROM progress_logs WHERE task_id = ?", (task_id,))
        cursor = conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        conn.commit()
        return cursor.rowcount > 0


# Progress
def log_progress_db(task_id: str, date: str, value: float) -> Task:
    """
    Add value to the task's progress for a calendar day (YYYY-MM-DD).
    There is at most one entry per day; repeated logs accumulate.
    """
    try:
        datetime.strptime(date, "%Y-%m-%d")
    except ValueError:
        raise ValueError(f"Invalid progress date: {date!r}")

    with get_db() as conn:
        row = conn.execute("SELECT id FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise TaskNotFoundError(task_id)
        conn.execute(
            """INSERT INTO progress_logs (task_id, date, value) VALUES (?, ?, ?)
               ON CONFLICT(task_id, date) DO UPDATE SET value = value + excluded.value""",
            (task_id, date, value)
        )
        conn.execute("UPDATE tasks SET updated_at = ? WHERE id = ?", (_now_iso(), task_id))
        conn.commit()

    return get_task_db(task_id)
