"""
Tests for reminders.py - reminder rules, dedup ledger and reminder cycles.
"""
import asyncio
import pytest
import sys
import os
from datetime import datetime, timedelta

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import ReminderSettings
from models import ProgressLog, Task
from reminders import (
    ReminderEvaluator,
    ReminderKind,
    SentReminderLedger,
    evaluate_task,
    evaluate_tasks,
    minutes_until,
)
from telegram import DeliveryOutcome
from conftest import FakeChannel


def make_task(task_id="t1", title="Write report", due_date=None, recurrence=None,
              completed=False, progress=None) -> Task:
    return Task(
        id=task_id,
        title=title,
        completed=completed,
        due_date=due_date,
        recurrence=recurrence,
        progress=progress or [],
        created_at="2024-07-01T09:00:00",
        updated_at="2024-07-01T09:00:00",
    )


@pytest.fixture
def settings():
    return ReminderSettings()


def kinds(events):
    return [event.kind for event in events]


class TestDueSoon:
    """Due-soon reminders for deadline tasks."""

    def test_fires_within_window_on_previous_day(self, settings):
        """Due tomorrow at 10:00, checked at 18:00 today."""
        task = make_task(due_date=datetime(2024, 7, 29, 10, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 18, 0), settings)

        assert kinds(events) == [ReminderKind.DUE_SOON]
        assert events[0].key == "t1-due-soon-2024-07-29"
        assert events[0].message == '⏰ Task due tomorrow: "Write report" is due at 10:00 AM.'

    def test_not_on_due_day(self, settings):
        """Same calendar day as the due date: no due-soon, and not overdue yet."""
        task = make_task(due_date=datetime(2024, 7, 29, 10, 0))
        events = evaluate_task(task, datetime(2024, 7, 29, 9, 0), settings)

        assert events == []

    def test_same_day_allowed_when_exclusion_disabled(self):
        settings = ReminderSettings(same_day_exclusion=False)
        task = make_task(due_date=datetime(2024, 7, 29, 10, 0))
        events = evaluate_task(task, datetime(2024, 7, 29, 9, 0), settings)

        assert kinds(events) == [ReminderKind.DUE_SOON]

    def test_not_before_window(self, settings):
        task = make_task(due_date=datetime(2024, 7, 29, 10, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 9, 0), settings)

        assert events == []

    def test_custom_window(self):
        settings = ReminderSettings(due_soon_window=timedelta(hours=48))
        task = make_task(due_date=datetime(2024, 7, 29, 10, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 9, 0), settings)

        assert kinds(events) == [ReminderKind.DUE_SOON]


class TestImminent:
    """Imminent reminders fire once per configured window."""

    def test_thirty_minute_window(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 11, 32), settings)

        assert kinds(events) == [ReminderKind.IMMINENT]
        assert events[0].key == "t1-imminent-30-2024-07-28-12"
        assert events[0].message == '❗ Task due in 30 minutes: "Write report".'

    def test_between_windows(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 11, 37), settings)

        assert events == []

    def test_ten_minute_window(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 11, 51), settings)

        assert kinds(events) == [ReminderKind.IMMINENT]
        assert events[0].key == "t1-imminent-10-2024-07-28-12"

    def test_band_edges(self, settings):
        """Band is (window - 5, window]: 30 fires, 25 does not."""
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))

        assert kinds(evaluate_task(task, datetime(2024, 7, 28, 11, 30), settings)) == [ReminderKind.IMMINENT]
        assert evaluate_task(task, datetime(2024, 7, 28, 11, 35), settings) == []

    def test_minutes_truncate(self):
        due = datetime(2024, 7, 28, 12, 0)
        assert minutes_until(due, datetime(2024, 7, 28, 11, 50, 30)) == 9
        assert minutes_until(due, datetime(2024, 7, 28, 12, 0, 30)) == 0

    def test_no_imminent_after_due(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 12, 5), settings)

        assert ReminderKind.IMMINENT not in kinds(events)


class TestOverdue:

    def test_fires_after_due(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        events = evaluate_task(task, datetime(2024, 7, 28, 12, 1), settings)

        assert kinds(events) == [ReminderKind.OVERDUE]
        assert events[0].key == "t1-overdue-2024-07-28"
        assert events[0].message == '⚠️ Task overdue: "Write report" was due on Jul 28, 12:00 PM.'

    def test_not_at_due_instant(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        assert evaluate_task(task, datetime(2024, 7, 28, 12, 0), settings) == []


class TestRecurringNudge:

    def test_before_threshold(self, settings):
        task = make_task(recurrence="daily")
        assert evaluate_task(task, datetime(2024, 7, 28, 18, 59), settings) == []

    def test_at_threshold(self, settings):
        task = make_task(recurrence="daily")
        events = evaluate_task(task, datetime(2024, 7, 28, 19, 0), settings)

        assert kinds(events) == [ReminderKind.RECURRING]
        assert events[0].key == "t1-recurring-2024-07-28"
        assert "Daily reminder" in events[0].message

    def test_progress_today_suppresses(self, settings):
        task = make_task(recurrence="daily", progress=[ProgressLog(date="2024-07-28", value=1)])
        assert evaluate_task(task, datetime(2024, 7, 28, 21, 0), settings) == []

    def test_progress_other_day_does_not_suppress(self, settings):
        task = make_task(recurrence="daily", progress=[ProgressLog(date="2024-07-27", value=1)])
        events = evaluate_task(task, datetime(2024, 7, 28, 21, 0), settings)

        assert kinds(events) == [ReminderKind.RECURRING]

    def test_weekly_message(self, settings):
        task = make_task(recurrence="weekly")
        events = evaluate_task(task, datetime(2024, 7, 28, 20, 0), settings)

        assert events[0].message.startswith("🔁 Weekly reminder:")


class TestKindExclusivity:

    def test_recurring_task_ignores_due_date(self, settings):
        """A recurring task never gets deadline reminders, even with a due date set."""
        task = make_task(recurrence="daily", due_date=datetime(2024, 7, 28, 12, 0))
        for now in [datetime(2024, 7, 27, 18, 0), datetime(2024, 7, 28, 11, 32), datetime(2024, 7, 28, 13, 0)]:
            assert set(kinds(evaluate_task(task, now, settings))) <= {ReminderKind.RECURRING}

    def test_deadline_task_never_nudged(self, settings):
        task = make_task(due_date=datetime(2024, 8, 10, 12, 0))
        assert evaluate_task(task, datetime(2024, 7, 28, 22, 0), settings) == []

    def test_task_without_due_date_or_recurrence(self, settings):
        assert evaluate_task(make_task(), datetime(2024, 7, 28, 22, 0), settings) == []

    def test_completed_task_suppressed(self, settings):
        overdue = make_task("a", due_date=datetime(2024, 7, 28, 12, 0), completed=True)
        recurring = make_task("b", recurrence="daily", completed=True)

        assert evaluate_tasks([overdue, recurring], datetime(2024, 7, 28, 21, 0), settings) == []


class TestSentReminderLedger:

    def test_claim_once(self):
        ledger = SentReminderLedger()
        assert ledger.claim("k") is True
        assert ledger.claim("k") is False
        assert "k" in ledger
        assert len(ledger) == 1

    def test_release_allows_reclaim(self):
        ledger = SentReminderLedger()
        ledger.claim("k")
        ledger.release("k")
        assert "k" not in ledger
        assert ledger.claim("k") is True


class SlowChannel:
    async def send(self, message):
        await asyncio.sleep(1)
        return DeliveryOutcome(delivered=True, detail="sent")


class BrokenChannel:
    async def send(self, message):
        raise RuntimeError("boom")


class TestReminderCycle:
    """Tests for ReminderEvaluator.run_cycle."""

    async def test_overdue_sent_once_across_cycles(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        channel = FakeChannel()
        evaluator = ReminderEvaluator(lambda now: [task], channel, settings)

        results = [
            await evaluator.run_cycle(datetime(2024, 7, 28, 12, 0) + timedelta(minutes=m))
            for m in (1, 2, 10, 60)
        ]

        assert [r.sent for r in results] == [1, 0, 0, 0]
        assert len(channel.messages) == 1

    async def test_imminent_scenario(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        channel = FakeChannel()
        evaluator = ReminderEvaluator(lambda now: [task], channel, settings)

        first = await evaluator.run_cycle(datetime(2024, 7, 28, 11, 32))
        second = await evaluator.run_cycle(datetime(2024, 7, 28, 11, 37))
        third = await evaluator.run_cycle(datetime(2024, 7, 28, 11, 51))

        assert (first.sent, second.sent, third.sent) == (1, 0, 1)
        assert channel.messages == [
            '❗ Task due in 30 minutes: "Write report".',
            '❗ Task due in 10 minutes: "Write report".',
        ]

    async def test_polling_every_five_minutes_hits_each_window(self, settings):
        """Polling at the band width sees every imminent window exactly once."""
        task = make_task(due_date=datetime(2024, 7, 28, 12, 0))
        channel = FakeChannel()
        evaluator = ReminderEvaluator(lambda now: [task], channel, settings)

        now = datetime(2024, 7, 28, 11, 3)
        while now < datetime(2024, 7, 28, 12, 0):
            await evaluator.run_cycle(now)
            now += timedelta(minutes=5)

        assert channel.messages == [
            '❗ Task due in 30 minutes: "Write report".',
            '❗ Task due in 10 minutes: "Write report".',
        ]

    async def test_recurring_scenario(self, settings):
        task = make_task(recurrence="daily")
        channel = FakeChannel()
        evaluator = ReminderEvaluator(lambda now: [task], channel, settings)

        assert (await evaluator.run_cycle(datetime(2024, 7, 28, 18, 59))).sent == 0
        assert (await evaluator.run_cycle(datetime(2024, 7, 28, 19, 0))).sent == 1
        assert (await evaluator.run_cycle(datetime(2024, 7, 28, 19, 30))).sent == 0
        # Next day is a new key
        assert (await evaluator.run_cycle(datetime(2024, 7, 29, 19, 0))).sent == 1

    async def test_failure_isolated(self, settings):
        """A failed send for one task does not stop the others."""
        tasks = [
            make_task("a", "Task A", due_date=datetime(2024, 7, 28, 8, 0)),
            make_task("b", "Task B", due_date=datetime(2024, 7, 28, 8, 0)),
            make_task("c", "Task C", due_date=datetime(2024, 7, 28, 8, 0)),
        ]
        channel = FakeChannel(fail_on="Task B")
        evaluator = ReminderEvaluator(lambda now: tasks, channel, settings)

        result = await evaluator.run_cycle(datetime(2024, 7, 28, 9, 0))

        assert result.success is True
        assert result.checked == 3
        assert result.sent == 2
        assert result.failed == 1
        assert any("Task C" in m for m in channel.messages)

    async def test_failed_send_retried_next_cycle(self, settings):
        task = make_task("b", "Task B", due_date=datetime(2024, 7, 28, 8, 0))
        channel = FakeChannel(fail_on="Task B")
        evaluator = ReminderEvaluator(lambda now: [task], channel, settings)

        await evaluator.run_cycle(datetime(2024, 7, 28, 9, 0))
        assert "b-overdue-2024-07-28" not in evaluator.ledger

        channel.fail_on = None
        result = await evaluator.run_cycle(datetime(2024, 7, 28, 9, 1))
        assert result.sent == 1
        assert "b-overdue-2024-07-28" in evaluator.ledger

    async def test_channel_timeout_counts_as_failure(self):
        settings = ReminderSettings(dispatch_timeout_seconds=0.05)
        task = make_task(due_date=datetime(2024, 7, 28, 8, 0))
        evaluator = ReminderEvaluator(lambda now: [task], SlowChannel(), settings)

        result = await evaluator.run_cycle(datetime(2024, 7, 28, 9, 0))

        assert result.failed == 1
        assert result.sent == 0
        assert len(evaluator.ledger) == 0

    async def test_channel_exception_counts_as_failure(self, settings):
        task = make_task(due_date=datetime(2024, 7, 28, 8, 0))
        evaluator = ReminderEvaluator(lambda now: [task], BrokenChannel(), settings)

        result = await evaluator.run_cycle(datetime(2024, 7, 28, 9, 0))

        assert result.success is True
        assert result.failed == 1

    async def test_cancelled_send_releases_key(self, settings):
        started = asyncio.Event()

        class HangingChannel:
            async def send(self, message):
                started.set()
                await asyncio.sleep(10)
                return DeliveryOutcome(delivered=True, detail="sent")

        task = make_task(due_date=datetime(2024, 7, 28, 8, 0))
        evaluator = ReminderEvaluator(lambda now: [task], HangingChannel(), settings)

        cycle = asyncio.create_task(evaluator.run_cycle(datetime(2024, 7, 28, 9, 0)))
        await asyncio.wait_for(started.wait(), timeout=1)
        cycle.cancel()
        with pytest.raises(asyncio.CancelledError):
            await cycle

        assert len(evaluator.ledger) == 0

    async def test_store_failure_aborts_cycle(self, settings):
        def broken_store(now):
            raise RuntimeError("database is locked")

        channel = FakeChannel()
        evaluator = ReminderEvaluator(broken_store, channel, settings)

        result = await evaluator.run_cycle(datetime(2024, 7, 28, 9, 0))

        assert result.success is False
        assert "database is locked" in result.error
        assert result.checked == 0
        assert channel.messages == []
        assert len(evaluator.ledger) == 0

    async def test_completed_tasks_counted_not_sent(self, settings):
        tasks = [make_task("a", due_date=datetime(2024, 7, 28, 8, 0), completed=True)]
        channel = FakeChannel()
        evaluator = ReminderEvaluator(lambda now: tasks, channel, settings)

        result = await evaluator.run_cycle(datetime(2024, 7, 28, 9, 0))

        assert (result.checked, result.sent, result.failed) == (1, 0, 0)
        assert channel.messages == []

    async def test_concurrent_cycles_send_once(self, settings):
        """Two cycles racing over the same task claim each key only once."""
        task = make_task(due_date=datetime(2024, 7, 28, 8, 0))
        channel = FakeChannel()
        evaluator = ReminderEvaluator(lambda now: [task], channel, settings)

        now = datetime(2024, 7, 28, 9, 0)
        results = await asyncio.gather(evaluator.run_cycle(now), evaluator.run_cycle(now))

        assert sum(r.sent for r in results) == 1
        assert len(channel.messages) == 1
