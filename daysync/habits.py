from __future__ import annotations

from datetime import date
from typing import Iterable

from daysync.models import Habit, Task, add_days


def _js_weekday(day: date) -> int:
    # 0 = Sunday ... 6 = Saturday
    return (day.weekday() + 1) % 7


def is_habit_due(habit: Habit, day: date) -> bool:
    if habit.enabled is False:
        return False
    weekday = _js_weekday(day)
    schedule_type = habit.schedule.type
    if schedule_type == "daily":
        return True
    if schedule_type == "weekdays":
        return 1 <= weekday <= 5
    if schedule_type == "weekends":
        return weekday in (0, 6)
    if schedule_type == "custom":
        return weekday in (habit.schedule.days_of_week or [])
    return False


def habits_due_by_date(habits: Iterable[Habit], days: Iterable[date]) -> dict[str, list[Habit]]:
    habit_list = list(habits)
    return {day.isoformat(): [habit for habit in habit_list if is_habit_due(habit, day)] for day in days}


def carry_over_tasks(tasks: Iterable[Task], today: date) -> list[Task]:
    """Yesterday's tasks that are still open and were not dismissed."""
    yesterday = add_days(today, -1).isoformat()
    return [
        task
        for task in tasks
        if task.date == yesterday and not task.completed_at and not task.dismissed_on_date
    ]
