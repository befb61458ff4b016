from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator

Recurrence = Literal["daily", "weekly", "monthly"]
GoalType = Literal["count", "amount"]


def _normalize_recurrence(value):
    # "none" and "" both mean a deadline task
    if isinstance(value, str) and value.strip().lower() in ("", "none"):
        return None
    return value


class Goal(BaseModel):
    type: GoalType
    target: float
    unit: Optional[str] = None


class ProgressLog(BaseModel):
    date: str  # YYYY-MM-DD
    value: float


class Project(BaseModel):
    id: str
    name: str
    created_at: str  # ISO format datetime string


class Task(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    completed: bool = False
    due_date: Optional[datetime] = None  # only set for deadline tasks
    project_id: Optional[str] = None
    tags: list[str] = []
    recurrence: Optional[Recurrence] = None
    goal: Optional[Goal] = None
    progress: list[ProgressLog] = []
    created_at: str
    updated_at: str

    @field_validator("recurrence", mode="before")
    @classmethod
    def none_means_no_recurrence(cls, value):
        return _normalize_recurrence(value)

    @property
    def is_recurring(self) -> bool:
        return self.recurrence is not None


class TaskCreate(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None
    due_date: Optional[datetime] = None
    project_id: Optional[str] = None
    tags: list[str] = []
    recurrence: Optional[Recurrence] = None
    goal: Optional[Goal] = None

    @field_validator("recurrence", mode="before")
    @classmethod
    def none_means_no_recurrence(cls, value):
        return _normalize_recurrence(value)


class TaskUpdate(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    completed: Optional[bool] = None
    due_date: Optional[datetime] = None
    project_id: Optional[str] = None
    tags: Optional[list[str]] = None
    recurrence: Optional[Recurrence] = None
    goal: Optional[Goal] = None

    @field_validator("recurrence", mode="before")
    @classmethod
    def none_means_no_recurrence(cls, value):
        return _normalize_recurrence(value)


class ProjectCreate(BaseModel):
    name: str = Field(min_length=1)


class ProgressLogCreate(BaseModel):
    date: Optional[str] = None  # defaults to today
    value: float = Field(gt=0)


class ExtractTaskRequest(BaseModel):
    url: str


class ExtractedTask(BaseModel):
    title: str = Field(max_length=100)
    description: str = ""
    due_date: Optional[str] = None  # YYYY-MM-DD
    tags: list[str] = []
    recurrence: Optional[Recurrence] = None
    goal_type: Optional[GoalType] = None
    goal_target: Optional[float] = None
    goal_unit: Optional[str] = None


def as_local_naive(value: datetime) -> datetime:
    """Convert an aware datetime to naive local time; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)
