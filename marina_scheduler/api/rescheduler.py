# marina_scheduler/api/rescheduler.py
#
# The only path through which an intervention's scheduled_date changes:
# 1. Operator drags a task to another day
# 2. Operator applies the weather rule's recommended shift
# 3. Automated sweep applies every recommendation of a week
# All three end in Rescheduler.reschedule, which writes with a compare-and-swap
# on (task_id, expected_previous_date) and never retries a conflict itself.

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional

from marina_scheduler.errors import ConcurrentModification, InvalidState, NotFound
from marina_scheduler.models import Evaluation, Severity, Task, TaskStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RescheduleResult:
    """Authoritative state after a reschedule: the stored task and its fresh evaluation."""

    task: Task
    evaluation: Evaluation
    moved: bool
    previous_date: Optional[date] = None

    def to_dict(self) -> dict:
        return {
            "task": self.task.to_dict(),
            "evaluation": self.evaluation.to_dict(),
            "moved": self.moved,
            "previous_date": self.previous_date.isoformat() if self.previous_date else None,
        }


class Rescheduler:
    """
    Args:
        store: task store with get(task_id) and compare_and_swap_date(task_id, expected, new)
        evaluator: SuitabilityEvaluator used to re-evaluate the moved task
        rule_book: RuleBook supplying the active rules
        planner: WeekPlanner whose cached weeks are invalidated on a move
    """

    def __init__(self, store, evaluator, rule_book, planner=None):
        self.store = store
        self.evaluator = evaluator
        self.rule_book = rule_book
        self.planner = planner

    async def reschedule(self, task_id: str, new_date: date,
                         expected_date: Optional[date] = None) -> RescheduleResult:
        """
        Move a scheduled task to new_date.

        A move to the task's current date is a no-op: no write, no invalidation.
        Callers acting on a date they saw earlier (a calendar view, a sweep) pass
        it as expected_date; a task found elsewhere is a concurrent modification.

        Raises:
            NotFound: unknown task id
            InvalidState: task is not in 'scheduled' status
            ConcurrentModification: someone else moved the task since we read it
        """
        # datetime is a date subclass but would not round-trip as YYYY-MM-DD
        if isinstance(new_date, datetime) or not isinstance(new_date, date):
            raise InvalidState(f"New date must be a calendar date, got {new_date!r}")
        if isinstance(expected_date, datetime):
            raise InvalidState(f"Expected date must be a calendar date, got {expected_date!r}")

        task = self.store.get(task_id)
        if task.status != TaskStatus.SCHEDULED:
            raise InvalidState(
                f"Task {task_id} is {task.status.value} and cannot be rescheduled",
                details={"task_id": task_id, "status": task.status.value},
            )
        if expected_date is not None and expected_date != task.scheduled_date:
            raise ConcurrentModification(task_id, expected_date, task.scheduled_date)

        rules = self.rule_book.rules
        if new_date == task.scheduled_date:
            evaluation = await self.evaluator.evaluate(task, rules)
            return RescheduleResult(task=task, evaluation=evaluation, moved=False)

        previous_date = task.scheduled_date
        try:
            moved = self.store.compare_and_swap_date(task_id, previous_date, new_date)
        except ConcurrentModification:
            logger.warning(f"Reschedule of task {task_id} lost a race ({previous_date} -> {new_date})")
            raise

        logger.info(f"Rescheduled task {task_id} from {previous_date} to {new_date}")
        if self.planner is not None:
            self.planner.invalidate_dates(moved.site_id, [previous_date, new_date])

        evaluation = await self.evaluator.evaluate(moved, rules)
        return RescheduleResult(task=moved, evaluation=evaluation, moved=True,
                                previous_date=previous_date)

    async def apply_recommendation(self, task_id: str) -> RescheduleResult:
        """
        Shift a task by its evaluation's recommended adjustment, through reschedule().

        Raises:
            InvalidState: the task has no recommendation (suitable, blocked or unknown)
        """
        task = self.store.get(task_id)
        evaluation = await self.evaluator.evaluate(task, self.rule_book.rules)
        if evaluation.recommended_adjustment_days is None:
            raise InvalidState(
                f"Task {task_id} has no weather recommendation to apply "
                f"(severity: {evaluation.severity.value})",
                details={"task_id": task_id, "severity": evaluation.severity.value},
            )
        new_date = task.scheduled_date + timedelta(days=evaluation.recommended_adjustment_days)
        return await self.reschedule(task_id, new_date, expected_date=task.scheduled_date)

    async def sweep_week(self, site_id: str, week_start: date) -> Dict[str, List]:
        """
        Apply every reschedule recommendation of a site's week.
        Conflicts are reported, never retried.

        Returns:
            dict: {
                'moved': list of RescheduleResult dicts,
                'blocked': task ids needing a human decision,
                'unknown': task ids whose weather could not be checked,
                'conflicts': [{'task_id', 'error'}] lost races / state changes,
            }
        """
        if self.planner is None:
            raise InvalidState("Sweeping a week needs a week planner")

        days = await self.planner.week(site_id, week_start)
        result = {"moved": [], "blocked": [], "unknown": [], "conflicts": []}

        for group in days.values():
            for task in group.tasks:
                evaluation = group.evaluations.get(task.id)
                if evaluation is None or task.status != TaskStatus.SCHEDULED:
                    continue
                if evaluation.severity == Severity.BLOCKED:
                    result["blocked"].append(task.id)
                    continue
                if evaluation.severity == Severity.UNKNOWN:
                    result["unknown"].append(task.id)
                    continue
                if evaluation.recommended_adjustment_days is None:
                    continue

                new_date = task.scheduled_date + timedelta(days=evaluation.recommended_adjustment_days)
                try:
                    moved = await self.reschedule(task.id, new_date, expected_date=task.scheduled_date)
                except (ConcurrentModification, InvalidState, NotFound) as e:
                    result["conflicts"].append({"task_id": task.id, "error": e.to_dict()})
                    continue
                result["moved"].append(moved.to_dict())

        logger.info(
            f"Weather sweep for {site_id} week {week_start}: {len(result['moved'])} moved, "
            f"{len(result['blocked'])} blocked, {len(result['unknown'])} unknown, "
            f"{len(result['conflicts'])} conflicts"
        )
        return result
