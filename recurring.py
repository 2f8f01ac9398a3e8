"""
Recurring task processor.

A small polling loop that finds completed recurring tasks whose next
occurrence has arrived and puts them back in progress with the new due
date. Tasks that are not due yet are left untouched.
"""
import asyncio
import calendar
import logging
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

import notifications
from models import Task, utcnow
from tasks import serialize_task

logger = logging.getLogger(__name__)

DAILY = "daily"
WEEKLY = "weekly"
MONTHLY = "monthly"
YEARLY = "yearly"


def _add_months(value: datetime, months: int) -> datetime:
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_occurrence(base: datetime, pattern) -> datetime:
    """Next due date one recurrence interval after ``base``; unknown patterns are weekly."""
    if pattern == DAILY:
        return base + timedelta(days=1)
    if pattern == MONTHLY:
        return _add_months(base, 1)
    if pattern == YEARLY:
        return _add_months(base, 12)
    return base + timedelta(days=7)


def sweep_recurring_tasks(db: Session, now=None, notifier=None) -> dict:
    """
    Reset every completed recurring task whose next occurrence has passed.

    Returns ``{"processed": <tasks examined>, "reset": <tasks reset>}``.
    One task failing is logged and rolled back; the sweep carries on.
    """
    now = now or utcnow()
    candidates = (
        db.query(Task)
        .filter(
            Task.is_recurring.is_(True),
            Task.status == "done",
            Task.recurrence_pattern.isnot(None),
        )
        .all()
    )
    logger.info("Processing recurring tasks: %s completed", len(candidates))

    reset = 0
    for task in candidates:
        task_id = task.id
        try:
            base = task.last_completed or task.updated_at
            due = next_occurrence(base, task.recurrence_pattern)
            if now < due:
                continue

            task.status = "in_progress"
            task.due_date = due
            task.updated_at = now
            db.commit()
            db.refresh(task)
            reset += 1
            logger.info("Reset recurring task id=%s next_due=%s", task_id, due.isoformat())
        except Exception:
            db.rollback()
            logger.exception("Failed to reset recurring task id=%s", task_id)
            continue

        if notifier is None:
            continue
        try:
            notifier.emit(notifications.task_room(task), notifications.TASK_UPDATED, serialize_task(task))
        except Exception:
            logger.exception("Failed to publish reset of recurring task id=%s", task_id)

    logger.info("Recurring task processing complete: reset %s of %s", reset, len(candidates))
    return {"processed": len(candidates), "reset": reset}


def _sweep_once(session_factory, notifier):
    db = session_factory()
    try:
        return sweep_recurring_tasks(db, notifier=notifier)
    finally:
        db.close()


async def run_recurring_processor(session_factory, notifier=None, *, interval_minutes: float = 60.0) -> None:
    """
    Sweep once immediately, then every ``interval_minutes``.

    To stop the processor, cancel the coroutine/task.
    """
    sleep_s = max(0.01, float(interval_minutes) * 60.0)
    logger.info("Starting recurring task processor (interval: %s minutes)", interval_minutes)

    while True:
        try:
            await asyncio.to_thread(_sweep_once, session_factory, notifier)
        except Exception:
            logger.exception("Recurring task sweep failed")
        await asyncio.sleep(sleep_s)
