import unittest
from datetime import date

from daysync.habits import carry_over_tasks, habits_due_by_date, is_habit_due
from daysync.models import Habit, HabitSchedule, Task

# 2024-05-04 is a Saturday
SATURDAY = date(2024, 5, 4)
SUNDAY = date(2024, 5, 5)
MONDAY = date(2024, 5, 6)
FRIDAY = date(2024, 5, 3)


def habit(schedule_type: str, days=None, enabled=None) -> Habit:
    return Habit(
        id=schedule_type,
        title=schedule_type,
        schedule=HabitSchedule(type=schedule_type, days_of_week=days),
        enabled=enabled,
    )


class HabitScheduleTests(unittest.TestCase):
    def test_weekends_only_saturday_and_sunday(self) -> None:
        weekend = habit("weekends")
        self.assertTrue(is_habit_due(weekend, SATURDAY))
        self.assertTrue(is_habit_due(weekend, SUNDAY))
        self.assertFalse(is_habit_due(weekend, MONDAY))
        self.assertFalse(is_habit_due(weekend, FRIDAY))

    def test_weekdays(self) -> None:
        weekdays = habit("weekdays")
        self.assertTrue(is_habit_due(weekdays, MONDAY))
        self.assertTrue(is_habit_due(weekdays, FRIDAY))
        self.assertFalse(is_habit_due(weekdays, SUNDAY))

    def test_custom_uses_sunday_zero(self) -> None:
        custom = habit("custom", days=[0, 1])
        self.assertTrue(is_habit_due(custom, SUNDAY))
        self.assertTrue(is_habit_due(custom, MONDAY))
        self.assertFalse(is_habit_due(custom, SATURDAY))

    def test_disabled_never_due(self) -> None:
        self.assertFalse(is_habit_due(habit("daily", enabled=False), MONDAY))
        self.assertTrue(is_habit_due(habit("daily", enabled=None), MONDAY))

    def test_due_by_date(self) -> None:
        due = habits_due_by_date([habit("daily"), habit("weekends")], [FRIDAY, SATURDAY])
        self.assertEqual([item.id for item in due["2024-05-03"]], ["daily"])
        self.assertEqual([item.id for item in due["2024-05-04"]], ["daily", "weekends"])


class CarryOverTests(unittest.TestCase):
    def test_only_open_undismissed_tasks_from_yesterday(self) -> None:
        tasks = [
            Task(id="open", date="2024-05-05", title="open"),
            Task(id="done", date="2024-05-05", title="done", completed_at="2024-05-05T10:00:00+00:00"),
            Task(id="dismissed", date="2024-05-05", title="dismissed", dismissed_on_date="2024-05-06"),
            Task(id="older", date="2024-05-04", title="older"),
        ]
        carried = carry_over_tasks(tasks, MONDAY)
        self.assertEqual([task.id for task in carried], ["open"])


if __name__ == "__main__":
    unittest.main()
