from datetime import date, datetime, timedelta

from pydantic import BaseModel

from models import Project, Task, as_local_naive


class GoalProgress(BaseModel):
    task_id: str
    title: str
    recurrence: str | None = None
    current: float
    target: float
    unit: str | None = None
    percentage: float


class DayCount(BaseModel):
    date: str  # YYYY-MM-DD
    completed: int


class ProjectCount(BaseModel):
    project_id: str
    name: str
    count: int


class Dashboard(BaseModel):
    total_tasks: int
    completed_tasks: int
    active_tasks: int
    goal_progress: list[GoalProgress]
    completed_last_7_days: list[DayCount]
    tasks_by_project: list[ProjectCount]
    upcoming_tasks: list[Task]


def _goal_progress(tasks: list[Task]) -> list[GoalProgress]:
    result = []
    for task in tasks:
        if not task.goal or task.goal.target <= 0:
            continue
        current = sum(entry.value for entry in task.progress)
        result.append(GoalProgress(
            task_id=task.id,
            title=task.title,
            recurrence=task.recurrence,
            current=current,
            target=task.goal.target,
            unit=task.goal.unit,
            percentage=current / task.goal.target * 100,
        ))
    return result


def _completed_last_7_days(tasks: list[Task], today: date) -> list[DayCount]:
    # Completion day is approximated by updated_at, oldest day first
    days = [today - timedelta(days=offset) for offset in range(6, -1, -1)]
    counts = {day: 0 for day in days}
    for task in tasks:
        if not task.completed:
            continue
        updated = datetime.fromisoformat(task.updated_at).date()
        if updated in counts:
            counts[updated] += 1
    return [DayCount(date=day.isoformat(), completed=counts[day]) for day in days]


def _tasks_by_project(tasks: list[Task], projects: list[Project]) -> list[ProjectCount]:
    result = []
    for project in projects:
        count = sum(1 for task in tasks if task.project_id == project.id)
        if count > 0:
            result.append(ProjectCount(project_id=project.id, name=project.name, count=count))
    return result


def _upcoming_tasks(tasks: list[Task], today: date) -> list[Task]:
    upcoming = [
        task for task in tasks
        if not task.completed and task.due_date and as_local_naive(task.due_date).date() > today
    ]
    return sorted(upcoming, key=lambda task: as_local_naive(task.due_date))


def build_dashboard(tasks: list[Task], projects: list[Project], today: date) -> Dashboard:
    """Completion and progress statistics over the full task list."""
    completed = sum(1 for task in tasks if task.completed)
    return Dashboard(
        total_tasks=len(tasks),
        completed_tasks=completed,
        active_tasks=len(tasks) - completed,
        goal_progress=_goal_progress(tasks),
        completed_last_7_days=_completed_last_7_days(tasks, today),
        tasks_by_project=_tasks_by_project(tasks, projects),
        upcoming_tasks=_upcoming_tasks(tasks, today),
    )
