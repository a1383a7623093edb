# marina_scheduler/api/scheduler.py
#
# Weekly planning view:
# - Groups interventions by scheduled date
# - Evaluates every task against the weather rules (fanned out, see evaluator)
# - Reduces each day to one severity: blocked > warning > unknown > suitable
# - Memoizes week task sets and week views per (week_start, site_id) until
#   the rescheduler or the live sync listener invalidates them

import logging
import threading
from collections import OrderedDict
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence

from marina_scheduler.api.cache import ExpiringCache
from marina_scheduler.models import DayGroup, Evaluation, Severity, Task, task_sort_key
from marina_scheduler.timezone_utils import week_days, week_start_for

logger = logging.getLogger(__name__)


def group_by_date(tasks: Iterable[Task]) -> Dict[date, List[Task]]:
    """Tasks per scheduled date, days ascending, tasks ordered by id within a day."""
    groups: Dict[date, List[Task]] = {}
    for task in tasks:
        groups.setdefault(task.scheduled_date, []).append(task)
    return OrderedDict(
        (day, sorted(groups[day], key=lambda t: task_sort_key(t.id)))
        for day in sorted(groups)
    )


def day_severity(evaluations: Iterable[Evaluation]) -> Severity:
    severity = Severity.SUITABLE
    for evaluation in evaluations:
        if evaluation.severity.rank > severity.rank:
            severity = evaluation.severity
    return severity


def representative_evaluation(tasks: Sequence[Task], evaluations: Dict[str, Evaluation],
                              severity: Severity) -> Optional[Evaluation]:
    """Evaluation of the lowest-id task whose severity equals the day's severity."""
    for task in sorted(tasks, key=lambda t: task_sort_key(t.id)):
        evaluation = evaluations.get(task.id)
        if evaluation is not None and evaluation.severity == severity:
            return evaluation
    return None


def build_day_group(day: date, tasks: Sequence[Task], evaluations: Dict[str, Evaluation]) -> DayGroup:
    ordered = sorted(tasks, key=lambda t: task_sort_key(t.id))
    day_evaluations = {t.id: evaluations[t.id] for t in ordered if t.id in evaluations}
    severity = day_severity(day_evaluations.values())
    return DayGroup(
        date=day,
        tasks=ordered,
        severity=severity,
        representative=representative_evaluation(ordered, day_evaluations, severity),
        evaluations=day_evaluations,
    )


async def aggregate(tasks: Sequence[Task], rules, evaluator) -> Dict[date, DayGroup]:
    """
    Group tasks by date and reduce each day's evaluations to one DayGroup.
    Pure over the evaluator's output; the rule order is fixed for the whole call.
    """
    rules = tuple(rules)
    groups = group_by_date(tasks)
    evaluations = await evaluator.evaluate_many(
        [task for day_tasks in groups.values() for task in day_tasks], rules
    )
    return OrderedDict(
        (day, build_day_group(day, day_tasks, evaluations))
        for day, day_tasks in groups.items()
    )


class WeekPlanner:
    """
    Serves the weekly calendar of a site.

    Args:
        store: task store with list_by_week(site_id, week_start)
        evaluator: SuitabilityEvaluator
        rule_book: RuleBook (one snapshot of its rules per aggregation)
        view_ttl: seconds a computed week view may be reused
    """

    def __init__(self, store, evaluator, rule_book, view_ttl: Optional[float] = None):
        self.store = store
        self.evaluator = evaluator
        self.rule_book = rule_book
        self.task_sets = ExpiringCache(ttl=view_ttl)
        self.week_views = ExpiringCache(ttl=view_ttl)
        self._generation = 0
        self._lock = threading.Lock()

    def tasks_for_week(self, site_id: str, week_start: date) -> List[Task]:
        key = (week_start_for(week_start), site_id)
        tasks = self.task_sets.get(key)
        if tasks is None:
            tasks = self.store.list_by_week(site_id, key[0])
            self.task_sets.set(key, tasks)
        return list(tasks)

    async def week(self, site_id: str, week_start: date) -> Dict[date, DayGroup]:
        """
        All seven days of the week, each with its severity. Days without tasks
        are suitable with no representative evaluation.
        """
        key = (week_start_for(week_start), site_id)
        cached = self.week_views.get(key)
        if cached is not None:
            return cached

        generation = self._generation
        tasks = self.tasks_for_week(site_id, key[0])
        groups = await aggregate(tasks, self.rule_book.rules, self.evaluator)

        view = OrderedDict(
            (day, groups.get(day) or DayGroup(date=day)) for day in week_days(key[0])
        )
        # an invalidation while we were computing makes this view stale
        with self._lock:
            if generation == self._generation:
                self.week_views.set(key, view)
        return view

    def _bump(self):
        with self._lock:
            self._generation += 1

    def invalidate_week(self, week_start: date, site_id: str = None) -> int:
        start = week_start_for(week_start)
        self._bump()
        matches = lambda key, _: key[0] == start and (site_id is None or key[1] == site_id)
        dropped = self.task_sets.invalidate_where(matches) + self.week_views.invalidate_where(matches)
        logger.debug(f"Invalidated week {start} (site={site_id}): {dropped} cache entries")
        return dropped

    def invalidate_dates(self, site_id: Optional[str], dates: Iterable[date]) -> int:
        weeks = {week_start_for(d) for d in dates}
        return sum(self.invalidate_week(week, site_id) for week in weeks)

    def invalidate_task(self, task_id: str) -> int:
        """Drop every cached week whose task set contains the task."""
        self._bump()
        stale = {key for key in self.task_sets.keys()
                 if any(t.id == task_id for t in (self.task_sets.get(key) or []))}
        stale |= {key for key in self.week_views.keys()
                  if any(task_id in group.evaluations or any(t.id == task_id for t in group.tasks)
                         for group in (self.week_views.get(key) or {}).values())}
        dropped = 0
        for key in stale:
            dropped += int(self.task_sets.invalidate(key)) + int(self.week_views.invalidate(key))
        logger.debug(f"Invalidated {len(stale)} cached weeks holding task {task_id}")
        return dropped

    def invalidate_all(self):
        self._bump()
        self.task_sets.clear()
        self.week_views.clear()
        logger.debug("Invalidated all cached weeks")

    def watched_weeks(self) -> List[tuple]:
        """(week_start, site_id) keys currently memoized."""
        return sorted(set(self.task_sets.keys()) | set(self.week_views.keys()), key=str)
