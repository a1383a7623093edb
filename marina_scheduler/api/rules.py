# marina_scheduler/api/rules.py
#
# Weather rescheduling rules:
# - Parses rule definitions (JSON file or built-in defaults) into ReschedulingRule objects
# - Predicates: "wind_speed > 30", "temperature_min < -5 or temperature_max > 35",
#   a list of {field, op, value} conditions, or the legacy threshold fields
#   (max_wind_speed, max_precipitation, min_temperature, max_temperature, weather_condition)
# - Keeps the active rule set, in declaration order, refreshable on demand

import json
import logging
import re
import threading
from typing import Callable, List, Optional, Tuple

from marina_scheduler.errors import ConfigurationError, SchedulingError
from marina_scheduler.models import (
    Allow,
    Block,
    Condition,
    NUMERIC_FIELDS,
    NUMERIC_OPERATORS,
    OBSERVATION_FIELDS,
    Predicate,
    Reschedule,
    ReschedulingRule,
    TEXT_OPERATORS,
)

logger = logging.getLogger(__name__)

# "field op value", longest operators first so ">=" is not read as ">"
CONDITION_PATTERN = re.compile(
    r"^\s*(?P<field>[a-z_]+)\s*(?P<op>>=|<=|==|!=|>|<|\bcontains\b)\s*(?P<value>.+?)\s*$",
    re.IGNORECASE,
)

# threshold shorthand of the rules manager: any exceeded threshold violates the rule
THRESHOLD_FIELDS = {
    "min_temperature": ("temperature_min", "<"),
    "max_temperature": ("temperature_max", ">"),
    "max_wind_speed": ("wind_speed", ">"),
    "max_precipitation": ("precipitation", ">"),
}

# weather_condition keywords and the observed conditions they also match
CONDITION_KEYWORDS = {
    "rain": ("rain", "drizzle"),
    "snow": ("snow",),
    "clear": ("clear",),
    "cloud": ("cloud",),
}

ACTION_ALIASES = {
    "postpone": "reschedule",
}

# Built-in rule set (wind in km/h, precipitation in mm/day, temperatures in °C)
DEFAULT_RULES = [
    {
        "name": "storm",
        "predicate": "condition contains thunderstorm",
        "action": "block",
        "reason": "Thunderstorm forecast: no work on the pontoons or on deck",
    },
    {
        "name": "heavy_rain",
        "predicate": "precipitation > 10",
        "action": "reschedule",
        "adjustment_days": 1,
        "reason": "Heavy rain expected",
    },
    {
        "name": "strong_wind",
        "predicate": "wind_speed > 54",
        "action": "reschedule",
        "adjustment_days": 1,
        "reason": "Wind too strong for safe work afloat",
    },
    {
        "name": "extreme_temperature",
        "predicate": "temperature_min < -5 or temperature_max > 35",
        "action": "reschedule",
        "adjustment_days": 1,
        "reason": "Temperature outside the working range",
    },
]


def _parse_value(field: str, raw, rule_name: str):
    if field in NUMERIC_FIELDS:
        if isinstance(raw, bool):
            raise ConfigurationError(f"Rule {rule_name!r}: {field} needs a number, got {raw!r}")
        try:
            return float(raw)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Rule {rule_name!r}: {field} needs a number, got {raw!r}")
    text = str(raw).strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "'\"":
        text = text[1:-1]
    return text


def make_condition(field: str, operator: str, value, rule_name: str = "?") -> Condition:
    """Build a validated Condition. Raises ConfigurationError on unknown field/operator."""
    field = (field or "").strip().lower()
    operator = (operator or "").strip().lower()
    if field not in OBSERVATION_FIELDS:
        raise ConfigurationError(
            f"Rule {rule_name!r} references unknown observation field {field!r}",
            details={"rule": rule_name, "field": field},
        )
    allowed = NUMERIC_OPERATORS if field in NUMERIC_FIELDS else TEXT_OPERATORS
    if operator not in allowed:
        raise ConfigurationError(
            f"Rule {rule_name!r}: operator {operator!r} is not valid for {field}",
            details={"rule": rule_name, "field": field, "operator": operator},
        )
    return Condition(field, operator, _parse_value(field, value, rule_name))


def parse_predicate(text: str, rule_name: str = "?") -> Predicate:
    """
    Parse "a > 1 and b < 2 or condition contains rain".
    'and' binds tighter than 'or'; no parentheses.
    """
    if not isinstance(text, str) or not text.strip():
        raise ConfigurationError(f"Rule {rule_name!r} has an empty predicate")

    clauses = []
    for clause_text in re.split(r"\s+or\s+", text.strip(), flags=re.IGNORECASE):
        conditions = []
        for condition_text in re.split(r"\s+and\s+", clause_text, flags=re.IGNORECASE):
            match = CONDITION_PATTERN.match(condition_text)
            if not match:
                raise ConfigurationError(
                    f"Rule {rule_name!r}: cannot parse condition {condition_text!r}",
                    details={"rule": rule_name, "predicate": text},
                )
            conditions.append(
                make_condition(match["field"], match["op"], match["value"], rule_name)
            )
        clauses.append(tuple(conditions))
    return Predicate(tuple(clauses))


def condition_clauses(text, rule_name: str = "?") -> List[Tuple[Condition, ...]]:
    """
    Clauses for the weather_condition shorthand: the observed condition contains
    the text, or it contains a term the text's keyword stands for
    ("rain" also matches drizzle).
    """
    first = make_condition("condition", "contains", text, rule_name)
    terms = [first.value.lower()]
    for keyword, matches in CONDITION_KEYWORDS.items():
        if keyword in terms[0]:
            terms.extend(term for term in matches if term not in terms)
    return [(first,)] + [(Condition("condition", "contains", term),) for term in terms[1:]]


def _predicate_from_definition(definition: dict, rule_name: str) -> Predicate:
    predicate = definition.get("predicate")

    if isinstance(predicate, str):
        return parse_predicate(predicate, rule_name)

    if isinstance(predicate, list):
        if not predicate:
            raise ConfigurationError(f"Rule {rule_name!r} has an empty predicate")
        conditions = []
        for item in predicate:
            if not isinstance(item, dict):
                raise ConfigurationError(f"Rule {rule_name!r}: condition must be an object")
            conditions.append(
                make_condition(item.get("field"), item.get("op"), item.get("value"), rule_name)
            )
        return Predicate((tuple(conditions),))

    if predicate is not None:
        raise ConfigurationError(f"Rule {rule_name!r}: unsupported predicate {predicate!r}")

    # legacy threshold fields, each one its own clause
    clauses = []
    if definition.get("weather_condition"):
        clauses.extend(condition_clauses(definition["weather_condition"], rule_name))
    for key, (field, operator) in THRESHOLD_FIELDS.items():
        if definition.get(key) is not None:
            clauses.append((make_condition(field, operator, definition[key], rule_name),))
    if not clauses:
        raise ConfigurationError(f"Rule {rule_name!r} has no predicate")
    return Predicate(tuple(clauses))


def _action_from_definition(definition: dict, rule_name: str):
    action = str(definition.get("action", "")).strip().lower()
    action = ACTION_ALIASES.get(action, action)

    if action == "block":
        return Block()
    if action == "allow":
        return Allow()
    if action == "reschedule":
        days = definition.get("adjustment_days")
        if isinstance(days, bool) or not isinstance(days, int) or days <= 0:
            raise ConfigurationError(
                f"Rule {rule_name!r}: reschedule needs a positive integer adjustment_days, got {days!r}",
                details={"rule": rule_name, "adjustment_days": days},
            )
        return Reschedule(days)
    raise ConfigurationError(
        f"Rule {rule_name!r}: unknown action {definition.get('action')!r}",
        details={"rule": rule_name, "action": definition.get("action")},
    )


def build_rule(definition: dict) -> ReschedulingRule:
    if not isinstance(definition, dict):
        raise ConfigurationError(f"Rule definition must be an object, got {definition!r}")
    name = definition.get("name") or definition.get("rule_name")
    if not name or not isinstance(name, str):
        raise ConfigurationError("Every rule needs a name", details={"rule": definition})

    # base_id is the rules manager's name for the site
    site_id = definition.get("site_id", definition.get("base_id"))
    if site_id is not None and (not isinstance(site_id, str) or not site_id.strip()):
        raise ConfigurationError(
            f"Rule {name!r}: site_id must be a site id or null, got {site_id!r}",
            details={"rule": name, "site_id": site_id},
        )
    return ReschedulingRule(
        name=name,
        predicate=_predicate_from_definition(definition, name),
        action=_action_from_definition(definition, name),
        reason=definition.get("reason") or "",
        site_id=site_id.strip() if site_id else None,
    )


def build_rules(definitions: List[dict]) -> Tuple[ReschedulingRule, ...]:
    """
    Build the active rule set, preserving declaration order.
    Inactive rules ("active": false or "is_active": false) are skipped.

    Raises:
        ConfigurationError: malformed rule or duplicate name
    """
    rules = []
    seen = set()
    for definition in definitions:
        if isinstance(definition, dict) and not definition.get("active", definition.get("is_active", True)):
            continue
        rule = build_rule(definition)
        if rule.name in seen:
            raise ConfigurationError(
                f"Duplicate rule name {rule.name!r}", details={"rule": rule.name}
            )
        seen.add(rule.name)
        rules.append(rule)
    return tuple(rules)


def load_rule_definitions(path: str) -> List[dict]:
    """Read {"rules": [...]} (or a bare list) from a JSON file."""
    try:
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationError(f"Cannot read rule file {path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Rule file {path} is not valid JSON: {e}")

    definitions = data.get("rules") if isinstance(data, dict) else data
    if not isinstance(definitions, list):
        raise ConfigurationError(f"Rule file {path} must hold a list of rules")
    return definitions


def json_rule_source(path: Optional[str]) -> Callable[[], List[dict]]:
    """Rule configuration source: the JSON file if given, else the built-in defaults."""
    if path:
        return lambda: load_rule_definitions(path)
    return lambda: [dict(rule) for rule in DEFAULT_RULES]


class RuleBook:
    """
    Holds the active rule set. Loaded at startup and on explicit refresh only;
    callers take one snapshot per evaluation pass so rule order is stable.
    """

    def __init__(self, source: Callable[[], List[dict]]):
        self._source = source
        self._lock = threading.Lock()
        self._rules: Tuple[ReschedulingRule, ...] = ()
        self._listeners = []
        self.refresh()

    @property
    def rules(self) -> Tuple[ReschedulingRule, ...]:
        return self._rules

    def on_refresh(self, callback: Callable[[], None]):
        self._listeners.append(callback)

    def refresh(self) -> Tuple[ReschedulingRule, ...]:
        """
        Reload rules from the source. On failure the previous rules stay active.

        Raises:
            ConfigurationError: the source produced a malformed rule set
        """
        try:
            rules = build_rules(self._source())
        except ConfigurationError:
            raise
        except (SchedulingError, TypeError, ValueError) as e:
            raise ConfigurationError(f"Cannot load rules: {e}") from e

        with self._lock:
            self._rules = rules
        logger.info(f"Loaded {len(rules)} active weather rules: {[r.name for r in rules]}")

        for callback in self._listeners:
            callback()
        return rules
