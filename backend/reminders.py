"""
Reminder evaluation.

Each cycle reads every task, works out which reminders are due at `now`
and sends them through the notification channel. The same cycle can be run
by the in-process scheduler or by the /cron/reminders endpoint; decisions
depend only on `now`, the task list and the ledger of keys already sent.

The ledger lives in process memory. It is reset on restart and is not
shared between instances, so running several instances can double-send.
"""
import asyncio
import threading
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Protocol

import structlog
from pydantic import BaseModel

from config import ReminderSettings
from models import Task, as_local_naive
from telegram import DeliveryOutcome

log = structlog.get_logger()


class ReminderKind(str, Enum):
    DUE_SOON = "due-soon"
    IMMINENT = "imminent"
    OVERDUE = "overdue"
    RECURRING = "recurring"


class ReminderEvent(BaseModel):
    kind: ReminderKind
    task: Task
    key: str
    message: str


class CycleResult(BaseModel):
    success: bool = True
    checked: int = 0
    sent: int = 0
    failed: int = 0
    error: Optional[str] = None


class NotificationChannel(Protocol):
    async def send(self, message: str) -> DeliveryOutcome: ...


class SentReminderLedger:
    """Keys of reminders already delivered in this process."""

    def __init__(self):
        self._keys: set[str] = set()
        self._lock = threading.Lock()

    def claim(self, key: str) -> bool:
        """Mark key as sent. Returns False if it was already claimed."""
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str):
        with self._lock:
            self._keys.discard(key)

    def clear(self):
        with self._lock:
            self._keys.clear()

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


def calendar_day(value: datetime) -> str:
    return value.strftime("%Y-%m-%d")


def hour_bucket(value: datetime) -> str:
    return value.strftime("%Y-%m-%d-%H")


def _format_time(value: datetime) -> str:
    # 10:00 AM, 9:05 PM
    return value.strftime("%I:%M %p").lstrip("0")


def _format_day_time(value: datetime) -> str:
    return f"{value.strftime('%b')} {value.day}, {_format_time(value)}"


def minutes_until(due: datetime, now: datetime) -> int:
    """Whole minutes from now to due, truncated toward zero."""
    return int((due - now).total_seconds() / 60)


def _deadline_reminders(task: Task, now: datetime, settings: ReminderSettings) -> list[ReminderEvent]:
    due = as_local_naive(task.due_date)
    due_day = calendar_day(due)
    events = []

    # Due soon: inside the lookahead window, but not on the due day itself
    same_day = settings.same_day_exclusion and calendar_day(now) == due_day
    if due - settings.due_soon_window < now < due and not same_day:
        events.append(ReminderEvent(
            kind=ReminderKind.DUE_SOON,
            task=task,
            key=f"{task.id}-due-soon-{due_day}",
            message=f'⏰ Task due tomorrow: "{task.title}" is due at {_format_time(due)}.',
        ))

    # Imminent: each window is a (window - band, window] slice of minutes remaining
    remaining = minutes_until(due, now)
    if remaining > 0:
        for window in settings.imminent_windows:
            if window - settings.imminent_band_minutes < remaining <= window:
                events.append(ReminderEvent(
                    kind=ReminderKind.IMMINENT,
                    task=task,
                    key=f"{task.id}-imminent-{window}-{hour_bucket(due)}",
                    message=f'❗ Task due in {window} minutes: "{task.title}".',
                ))

    if now > due:
        events.append(ReminderEvent(
            kind=ReminderKind.OVERDUE,
            task=task,
            key=f"{task.id}-overdue-{due_day}",
            message=f'⚠️ Task overdue: "{task.title}" was due on {_format_day_time(due)}.',
        ))

    return events


def _recurring_reminders(task: Task, now: datetime, settings: ReminderSettings) -> list[ReminderEvent]:
    today = calendar_day(now)
    if any(entry.date == today for entry in task.progress):
        return []
    if now.hour < settings.recurring_hour:
        return []
    return [ReminderEvent(
        kind=ReminderKind.RECURRING,
        task=task,
        key=f"{task.id}-recurring-{today}",
        message=(
            f"🔁 {task.recurrence.capitalize()} reminder: "
            f'Don\'t forget to log your progress for "{task.title}" today!'
        ),
    )]


def evaluate_task(task: Task, now: datetime, settings: ReminderSettings) -> list[ReminderEvent]:
    """
    Reminders that apply to one task at `now`, ignoring what was already sent.
    Completed tasks get none. Recurring tasks only get the recurring nudge;
    deadline tasks only get due-soon, imminent and overdue.
    """
    if task.completed:
        return []
    now = as_local_naive(now)
    if task.is_recurring:
        return _recurring_reminders(task, now, settings)
    if task.due_date is not None:
        return _deadline_reminders(task, now, settings)
    return []


def evaluate_tasks(tasks: list[Task], now: datetime, settings: ReminderSettings) -> list[ReminderEvent]:
    events = []
    for task in tasks:
        events.extend(evaluate_task(task, now, settings))
    return events


class ReminderEvaluator:
    """Runs reminder cycles against a task source and a notification channel."""

    def __init__(
        self,
        list_tasks: Callable[[datetime], list[Task]],
        channel: NotificationChannel,
        settings: Optional[ReminderSettings] = None,
        ledger: Optional[SentReminderLedger] = None,
    ):
        self.list_tasks = list_tasks
        self.channel = channel
        self.settings = settings or ReminderSettings()
        self.ledger = ledger if ledger is not None else SentReminderLedger()

    async def run_cycle(self, now: Optional[datetime] = None) -> CycleResult:
        """
        Evaluate every task at `now` and send what is due.
        Never raises: a failed task read aborts the cycle with success=False,
        failed sends are counted and their keys left unclaimed for the next cycle.
        """
        now = as_local_naive(now or datetime.now())
        log.info("reminder_cycle_started", now=now.isoformat())

        try:
            tasks = await asyncio.to_thread(self.list_tasks, now)
        except Exception as e:
            log.exception("reminder_cycle_aborted", error=str(e))
            return CycleResult(success=False, error=str(e))

        result = CycleResult(checked=len(tasks))
        for task in tasks:
            try:
                events = evaluate_task(task, now, self.settings)
            except Exception as e:
                log.exception("reminder_evaluation_failed", task_id=task.id, error=str(e))
                result.failed += 1
                continue

            for event in events:
                outcome = await self._dispatch(event)
                if outcome is None:
                    continue
                if outcome.delivered:
                    result.sent += 1
                else:
                    result.failed += 1

        log.info("reminder_cycle_finished", checked=result.checked, sent=result.sent, failed=result.failed)
        return result

    async def _dispatch(self, event: ReminderEvent) -> Optional[DeliveryOutcome]:
        """Send one reminder unless its key is already claimed. Returns None when skipped."""
        if not self.ledger.claim(event.key):
            return None

        log.info("sending_reminder", kind=event.kind.value, task_id=event.task.id, title=event.task.title)
        timeout = self.settings.dispatch_timeout_seconds
        try:
            outcome = await asyncio.wait_for(self.channel.send(event.message), timeout=timeout)
        except asyncio.TimeoutError:
            outcome = DeliveryOutcome(delivered=False, detail=f"Timed out after {timeout}s")
        except Exception as e:
            log.exception("reminder_channel_error", key=event.key)
            outcome = DeliveryOutcome(delivered=False, detail=str(e))
        except BaseException:
            # Cancelled mid-send: leave the key free for the next cycle
            self.ledger.release(event.key)
            log.warning("reminder_dispatch_cancelled", kind=event.kind.value, task_id=event.task.id, key=event.key)
            raise

        if not outcome.delivered:
            self.ledger.release(event.key)
            log.warning(
                "reminder_not_delivered",
                kind=event.kind.value,
                task_id=event.task.id,
                key=event.key,
                detail=outcome.detail,
            )
        return outcome
