# marina_scheduler/api/evaluator.py
#
# Suitability evaluation: is a task's scheduled day fit for work given the
# site's weather and the active rules?
# - No recorded observation: suitable (fail open), flagged as missing data
# - Provider failure or timeout: explicit "unavailable" evaluation, never "suitable"
# - Blocking rules outrank advisory (reschedule) rules

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import date
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from marina_scheduler.api.cache import ExpiringCache
from marina_scheduler.errors import DataUnavailable
from marina_scheduler.models import (
    DataStatus,
    Evaluation,
    ReschedulingRule,
    Task,
    WeatherObservation,
)

logger = logging.getLogger(__name__)

_NOT_CACHED = object()


@dataclass(frozen=True)
class ObservationLookup:
    """Result of asking the provider for one (site, date)."""

    observation: Optional[WeatherObservation]
    status: DataStatus
    error: Optional[str] = None


def evaluate_observation(task: Task, observation: Optional[WeatherObservation],
                         rules: Sequence[ReschedulingRule]) -> Evaluation:
    """
    Apply the rules, in declaration order, to the observation of the task's day.
    Rules scoped to another site are skipped.

    - any violated block rule: not suitable, blocking rules first then advisory
      ones, no recommended adjustment
    - only reschedule rules violated: not suitable, recommendation taken from
      the first violated one in declaration order
    - nothing violated (or no observation): suitable
    """
    if observation is None:
        return Evaluation(task_id=task.id, suitable=True, data_status=DataStatus.MISSING)

    blocking: List[ReschedulingRule] = []
    advisory: List[ReschedulingRule] = []
    for rule in rules:
        if not rule.applies_to(observation.site_id) or not rule.violated_by(observation):
            continue
        if rule.is_blocking:
            blocking.append(rule)
        else:
            advisory.append(rule)

    if blocking:
        return Evaluation(
            task_id=task.id,
            suitable=False,
            observation=observation,
            violated_rules=tuple(blocking + advisory),
        )
    if advisory:
        return Evaluation(
            task_id=task.id,
            suitable=False,
            observation=observation,
            violated_rules=tuple(advisory),
            recommended_adjustment_days=advisory[0].adjustment_days,
        )
    return Evaluation(task_id=task.id, suitable=True, observation=observation)


def unavailable_evaluation(task: Task, error: str) -> Evaluation:
    return Evaluation(
        task_id=task.id,
        suitable=False,
        data_status=DataStatus.UNAVAILABLE,
        error=error,
    )


class SuitabilityEvaluator:
    """
    Evaluates tasks against a rule set, fetching observations from the weather
    provider with a bounded timeout and a read-through (site_id, date) cache.

    Provider calls run on a dedicated pool of max_concurrency threads. A call
    that times out keeps its worker until the provider actually returns, so
    slow providers never see more than max_concurrency calls at once.

    Args:
        provider: object with get_observation(site_id, date) -> WeatherObservation | None
        timeout: seconds allowed for a single provider call
        cache_ttl: seconds an observation (or its absence) stays cached
        max_concurrency: provider calls allowed in flight
    """

    def __init__(self, provider, timeout: float = 5.0, cache_ttl: Optional[float] = 900.0,
                 max_concurrency: int = 4):
        self.provider = provider
        self.timeout = timeout
        self.max_concurrency = max(1, int(max_concurrency))
        self.observations = ExpiringCache(ttl=cache_ttl)
        self._executor = ThreadPoolExecutor(max_workers=self.max_concurrency,
                                            thread_name_prefix="weather-provider")

    def close(self, wait: bool = True):
        """Stop the provider pool; with wait, block until running calls return."""
        self._executor.shutdown(wait=wait)

    async def lookup(self, site_id: str, day: date) -> ObservationLookup:
        key = (site_id, day)
        cached = self.observations.get(key, _NOT_CACHED)
        if cached is not _NOT_CACHED:
            status = DataStatus.AVAILABLE if cached is not None else DataStatus.MISSING
            return ObservationLookup(cached, status)

        loop = asyncio.get_running_loop()
        try:
            # a queued call cancelled by the timeout never reaches the provider
            observation = await asyncio.wait_for(
                loop.run_in_executor(self._executor, self.provider.get_observation, site_id, day),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Weather provider timed out after {self.timeout}s for {site_id} on {day}")
            return ObservationLookup(
                None, DataStatus.UNAVAILABLE, f"Weather provider timed out after {self.timeout}s"
            )
        except DataUnavailable as e:
            logger.warning(f"Weather data unavailable for {site_id} on {day}: {e.message}")
            return ObservationLookup(None, DataStatus.UNAVAILABLE, e.message)
        except Exception as e:
            logger.warning(f"Weather provider failed for {site_id} on {day}: {e}")
            return ObservationLookup(None, DataStatus.UNAVAILABLE, f"Weather provider failed: {e}")

        # failures are never cached; absence is, for the same TTL
        self.observations.set(key, observation)
        if observation is None:
            return ObservationLookup(None, DataStatus.MISSING)
        return ObservationLookup(observation, DataStatus.AVAILABLE)

    def evaluate_lookup(self, task: Task, lookup: ObservationLookup,
                        rules: Sequence[ReschedulingRule]) -> Evaluation:
        if lookup.status == DataStatus.UNAVAILABLE:
            return unavailable_evaluation(task, lookup.error or "Weather data unavailable")
        return evaluate_observation(task, lookup.observation, rules)

    async def evaluate(self, task: Task, rules: Iterable[ReschedulingRule]) -> Evaluation:
        """Evaluate one task. Never raises for weather problems; see Evaluation.data_status."""
        rules = tuple(rules)
        lookup = await self.lookup(task.site_id, task.scheduled_date)
        return self.evaluate_lookup(task, lookup, rules)

    async def evaluate_many(self, tasks: Sequence[Task],
                            rules: Iterable[ReschedulingRule]) -> Dict[str, Evaluation]:
        """
        Evaluate tasks concurrently: one provider lookup per distinct (site, date),
        at most max_concurrency submitted at a time. Cancelling the caller cancels the
        fan-out; nothing is kept from a cancelled run.
        """
        rules = tuple(rules)
        keys: List[Tuple[str, date]] = list(dict.fromkeys((t.site_id, t.scheduled_date) for t in tasks))
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def lookup_with_semaphore(key):
            async with semaphore:
                return await self.lookup(*key)

        results = await asyncio.gather(*[lookup_with_semaphore(key) for key in keys])
        lookups = dict(zip(keys, results))

        return {
            task.id: self.evaluate_lookup(task, lookups[(task.site_id, task.scheduled_date)], rules)
            for task in tasks
        }

    def forget(self, site_id: str = None, day: date = None) -> int:
        """Drop cached observations matching site and/or day (both None: everything)."""
        return self.observations.invalidate_where(
            lambda key, _: (site_id is None or key[0] == site_id) and (day is None or key[1] == day)
        )
