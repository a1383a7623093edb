# marina_scheduler/models.py
#
# Data model of the scheduling engine: interventions, weather observations,
# rescheduling rules and the derived evaluations / day groups.

from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from marina_scheduler.errors import InvalidState


class TaskStatus(str, Enum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# forward-only lifecycle; completed and cancelled are final
STATUS_TRANSITIONS = {
    TaskStatus.SCHEDULED: (TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED, TaskStatus.CANCELLED),
    TaskStatus.IN_PROGRESS: (TaskStatus.COMPLETED, TaskStatus.CANCELLED),
    TaskStatus.COMPLETED: (),
    TaskStatus.CANCELLED: (),
}


def statuses_leading_to(status: TaskStatus) -> Tuple[TaskStatus, ...]:
    """Statuses a task may be in to move to status (staying put included)."""
    return tuple(s for s in TaskStatus if s == status or status in STATUS_TRANSITIONS[s])


class InterventionType(str, Enum):
    PREVENTIVE = "preventive"
    CORRECTIVE = "corrective"
    EMERGENCY = "emergency"
    INSPECTION = "inspection"
    REPAIR = "repair"


class Severity(str, Enum):
    SUITABLE = "suitable"
    UNKNOWN = "unknown"
    WARNING = "warning"
    BLOCKED = "blocked"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


# blocked > warning > unknown > suitable
_SEVERITY_RANK = {
    Severity.SUITABLE: 0,
    Severity.UNKNOWN: 1,
    Severity.WARNING: 2,
    Severity.BLOCKED: 3,
}


class DataStatus(str, Enum):
    AVAILABLE = "available"
    MISSING = "missing"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class Task:
    """A scheduled intervention (maintenance, inspection, repair) on a boat at a site."""

    id: str
    title: str
    scheduled_date: date
    site_id: str
    status: TaskStatus = TaskStatus.SCHEDULED
    intervention_type: InterventionType = InterventionType.PREVENTIVE
    description: str = ""
    technician_id: Optional[str] = None
    boat_id: Optional[str] = None
    updated_at: Optional[str] = None

    def with_date(self, new_date: date) -> "Task":
        return replace(self, scheduled_date=new_date)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "scheduled_date": self.scheduled_date.isoformat(),
            "status": self.status.value,
            "intervention_type": self.intervention_type.value,
            "site_id": self.site_id,
            "technician_id": self.technician_id,
            "boat_id": self.boat_id,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Site:
    """A marina base whose weather applies to the tasks scheduled there."""

    id: str
    name: str
    latitude: Optional[float] = None
    longitude: Optional[float] = None


@dataclass(frozen=True)
class WeatherObservation:
    """Recorded weather fact for a (site, date). Immutable once recorded."""

    site_id: str
    date: date
    condition: str
    temperature_min: float
    temperature_max: float
    wind_speed: Optional[float] = None
    precipitation: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "site_id": self.site_id,
            "date": self.date.isoformat(),
            "condition": self.condition,
            "temperature_min": self.temperature_min,
            "temperature_max": self.temperature_max,
            "wind_speed": self.wind_speed,
            "precipitation": self.precipitation,
        }


# -------------------
# RULE ACTIONS
# -------------------
@dataclass(frozen=True)
class Allow:
    name = "allow"


@dataclass(frozen=True)
class Reschedule:
    adjustment_days: int
    name = "reschedule"

    def __post_init__(self):
        if not isinstance(self.adjustment_days, int) or self.adjustment_days <= 0:
            raise InvalidState(
                f"Reschedule adjustment must be a positive number of days, got {self.adjustment_days!r}"
            )


@dataclass(frozen=True)
class Block:
    name = "block"


RuleAction = Union[Allow, Reschedule, Block]

NUMERIC_FIELDS = ("temperature_min", "temperature_max", "wind_speed", "precipitation")
TEXT_FIELDS = ("condition",)
OBSERVATION_FIELDS = NUMERIC_FIELDS + TEXT_FIELDS

NUMERIC_OPERATORS = (">", ">=", "<", "<=", "==", "!=")
TEXT_OPERATORS = ("==", "!=", "contains")


@dataclass(frozen=True)
class Condition:
    """One comparison of an observation field against a constant."""

    field: str
    operator: str
    value: Union[float, str]

    def holds(self, observation: WeatherObservation) -> bool:
        if self.field in NUMERIC_FIELDS:
            if self.operator not in NUMERIC_OPERATORS or isinstance(self.value, str):
                raise InvalidState(f"Malformed predicate: {self}")
            actual = getattr(observation, self.field)
            if actual is None:
                return False
            return _compare(actual, self.operator, self.value)

        if self.field in TEXT_FIELDS:
            if self.operator not in TEXT_OPERATORS:
                raise InvalidState(f"Malformed predicate: {self}")
            actual = (getattr(observation, self.field) or "").lower()
            expected = str(self.value).lower()
            if self.operator == "contains":
                return expected in actual
            return _compare(actual, self.operator, expected)

        raise InvalidState(f"Predicate references unknown field {self.field!r}")

    def __str__(self):
        return f"{self.field} {self.operator} {self.value}"


def _compare(actual, operator, expected) -> bool:
    if operator == ">":
        return actual > expected
    if operator == ">=":
        return actual >= expected
    if operator == "<":
        return actual < expected
    if operator == "<=":
        return actual <= expected
    if operator == "==":
        return actual == expected
    return actual != expected


@dataclass(frozen=True)
class Predicate:
    """
    Disjunction of conjunctions: the predicate holds when every condition of
    at least one clause holds.
    """

    clauses: Tuple[Tuple[Condition, ...], ...]

    def holds(self, observation: WeatherObservation) -> bool:
        return any(
            all(condition.holds(observation) for condition in clause)
            for clause in self.clauses
        )

    def __str__(self):
        return " or ".join(" and ".join(str(c) for c in clause) for clause in self.clauses)


@dataclass(frozen=True)
class ReschedulingRule:
    name: str
    predicate: Predicate
    action: RuleAction
    reason: str = ""
    # None: applies to every site
    site_id: Optional[str] = None

    def applies_to(self, site_id: str) -> bool:
        return self.site_id is None or self.site_id == site_id

    @property
    def adjustment_days(self) -> Optional[int]:
        if isinstance(self.action, Reschedule):
            return self.action.adjustment_days
        return None

    @property
    def is_blocking(self) -> bool:
        return isinstance(self.action, Block)

    def violated_by(self, observation: WeatherObservation) -> bool:
        """An allow rule is never violated, whatever its predicate says."""
        if isinstance(self.action, Allow):
            return False
        return self.predicate.holds(observation)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "predicate": str(self.predicate),
            "action": self.action.name,
            "adjustment_days": self.adjustment_days,
            "reason": self.reason,
            "site_id": self.site_id,
        }


# -------------------
# DERIVED
# -------------------
@dataclass(frozen=True)
class Evaluation:
    """Per-task outcome of applying the rule set to the day's observation. Never persisted."""

    task_id: str
    suitable: bool
    observation: Optional[WeatherObservation] = None
    violated_rules: Tuple[ReschedulingRule, ...] = ()
    recommended_adjustment_days: Optional[int] = None
    data_status: DataStatus = DataStatus.AVAILABLE
    error: Optional[str] = None

    @property
    def severity(self) -> Severity:
        if self.data_status == DataStatus.UNAVAILABLE:
            return Severity.UNKNOWN
        if any(rule.is_blocking for rule in self.violated_rules):
            return Severity.BLOCKED
        if self.violated_rules:
            return Severity.WARNING
        return Severity.SUITABLE

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "suitable": self.suitable,
            "severity": self.severity.value,
            "data_status": self.data_status.value,
            "observation": self.observation.to_dict() if self.observation else None,
            "violated_rules": [rule.to_dict() for rule in self.violated_rules],
            "recommended_adjustment_days": self.recommended_adjustment_days,
            "error": self.error,
        }


@dataclass
class DayGroup:
    date: date
    tasks: List[Task] = field(default_factory=list)
    severity: Severity = Severity.SUITABLE
    representative: Optional[Evaluation] = None
    evaluations: Dict[str, Evaluation] = field(default_factory=dict)

    @property
    def data_status(self) -> Optional[DataStatus]:
        """
        Weather data behind the day's severity: unavailable if any lookup failed,
        missing if no task had an observation, None for a day without evaluations.
        """
        statuses = {evaluation.data_status for evaluation in self.evaluations.values()}
        if not statuses:
            return None
        if DataStatus.UNAVAILABLE in statuses:
            return DataStatus.UNAVAILABLE
        if statuses == {DataStatus.MISSING}:
            return DataStatus.MISSING
        return DataStatus.AVAILABLE

    def to_dict(self) -> dict:
        data_status = self.data_status
        return {
            "date": self.date.isoformat(),
            "severity": self.severity.value,
            "data_status": data_status.value if data_status else None,
            "tasks": [
                dict(task.to_dict(), evaluation=self.evaluations[task.id].to_dict())
                if task.id in self.evaluations else task.to_dict()
                for task in self.tasks
            ],
            "evaluation": self.representative.to_dict() if self.representative else None,
        }


class ChangeKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class TaskChange:
    """One change-feed event about an intervention record."""

    task_id: str
    kind: ChangeKind
    site_id: Optional[str] = None
    old_date: Optional[date] = None
    new_date: Optional[date] = None

    @property
    def dates(self) -> List[date]:
        return [d for d in (self.old_date, self.new_date) if d is not None]


def task_sort_key(task_id):
    """Numeric ids sort numerically, everything else lexically after them."""
    text = str(task_id)
    if text.isdigit():
        return (0, int(text), text)
    return (1, 0, text)
