# testing/test_rules.py
"""
Tests for rule parsing, predicates and the rule book.
"""
import json
import os
import pytest

from marina_scheduler.api.rules import (
    DEFAULT_RULES,
    RuleBook,
    build_rules,
    json_rule_source,
    load_rule_definitions,
    parse_predicate,
)
from marina_scheduler.errors import ConfigurationError, InvalidState
from marina_scheduler.models import Allow, Block, Condition, Reschedule
from testing.mock_data import make_observation, static_rules


class TestPredicateParsing:

    def test_single_condition(self):
        predicate = parse_predicate("wind_speed > 30")
        assert predicate.clauses == ((Condition("wind_speed", ">", 30.0),),)

    def test_and_binds_tighter_than_or(self):
        predicate = parse_predicate("wind_speed > 30 and precipitation >= 5 or condition contains storm")
        assert len(predicate.clauses) == 2
        assert len(predicate.clauses[0]) == 2
        assert predicate.clauses[1][0].operator == "contains"

    def test_greater_equal_is_not_read_as_greater(self):
        condition = parse_predicate("precipitation >= 5").clauses[0][0]
        assert condition.operator == ">="
        assert condition.value == 5.0

    def test_quoted_text_value(self):
        condition = parse_predicate("condition == 'Heavy rain'").clauses[0][0]
        assert condition.value == "Heavy rain"

    def test_unknown_field_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_predicate("humidity > 80")

    def test_text_operator_on_numeric_field_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_predicate("wind_speed contains 3")

    def test_non_numeric_threshold_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_predicate("wind_speed > strong")

    def test_empty_predicate_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_predicate("   ")


class TestPredicateEvaluation:

    def test_wind_threshold(self):
        predicate = parse_predicate("wind_speed > 30")
        assert predicate.holds(make_observation(wind_speed=35))
        assert not predicate.holds(make_observation(wind_speed=30))

    def test_absent_optional_field_does_not_hold(self):
        predicate = parse_predicate("wind_speed > 30")
        assert not predicate.holds(make_observation(wind_speed=None))

    def test_contains_is_case_insensitive(self):
        predicate = parse_predicate("condition contains THUNDERSTORM")
        assert predicate.holds(make_observation(condition="Thunderstorm with slight hail"))
        assert not predicate.holds(make_observation(condition="Clear sky"))

    def test_disjunction(self):
        predicate = parse_predicate("temperature_min < -5 or temperature_max > 35")
        assert predicate.holds(make_observation(temperature_min=-8, temperature_max=2))
        assert predicate.holds(make_observation(temperature_min=20, temperature_max=38))
        assert not predicate.holds(make_observation(temperature_min=5, temperature_max=20))

    def test_malformed_condition_raises_invalid_state(self):
        with pytest.raises(InvalidState):
            Condition("wind_speed", "contains", 3.0).holds(make_observation())
        with pytest.raises(InvalidState):
            Condition("humidity", ">", 3.0).holds(make_observation())


class TestBuildRules:

    def test_default_rules_build(self):
        rules = build_rules(DEFAULT_RULES)
        assert [r.name for r in rules] == ["storm", "heavy_rain", "strong_wind", "extreme_temperature"]
        assert isinstance(rules[0].action, Block)
        assert rules[1].adjustment_days == 1

    def test_declaration_order_preserved(self):
        rules = build_rules([
            {"name": "b", "predicate": "wind_speed > 1", "action": "block"},
            {"name": "a", "predicate": "wind_speed > 2", "action": "allow"},
        ])
        assert [r.name for r in rules] == ["b", "a"]
        assert isinstance(rules[1].action, Allow)

    def test_postpone_is_reschedule(self):
        rules = build_rules([
            {"name": "rain", "predicate": "precipitation > 5", "action": "postpone", "adjustment_days": 2},
        ])
        assert rules[0].action == Reschedule(2)

    @pytest.mark.parametrize("days", [0, -1, None, 1.5, True, "2"])
    def test_reschedule_needs_positive_integer(self, days):
        with pytest.raises(ConfigurationError):
            build_rules([
                {"name": "rain", "predicate": "precipitation > 5", "action": "reschedule", "adjustment_days": days},
            ])

    def test_reschedule_action_validates_itself(self):
        with pytest.raises(InvalidState):
            Reschedule(0)

    def test_unknown_action_rejected(self):
        with pytest.raises(ConfigurationError):
            build_rules([{"name": "x", "predicate": "wind_speed > 1", "action": "ignore"}])

    def test_duplicate_names_rejected(self):
        with pytest.raises(ConfigurationError):
            build_rules([
                {"name": "x", "predicate": "wind_speed > 1", "action": "block"},
                {"name": "x", "predicate": "wind_speed > 2", "action": "block"},
            ])

    def test_inactive_rules_skipped(self):
        rules = build_rules([
            {"name": "x", "predicate": "wind_speed > 1", "action": "block", "is_active": False},
            {"name": "y", "predicate": "wind_speed > 2", "action": "block"},
        ])
        assert [r.name for r in rules] == ["y"]

    def test_condition_list_is_a_conjunction(self):
        rules = build_rules([{
            "name": "cold_and_windy",
            "predicate": [
                {"field": "temperature_min", "op": "<", "value": 0},
                {"field": "wind_speed", "op": ">", "value": 20},
            ],
            "action": "block",
        }])
        predicate = rules[0].predicate
        assert predicate.holds(make_observation(temperature_min=-2, wind_speed=25))
        assert not predicate.holds(make_observation(temperature_min=-2, wind_speed=10))

    def test_legacy_thresholds_any_exceeded(self):
        rules = build_rules([{
            "rule_name": "Conditions difficiles",
            "max_wind_speed": 40,
            "max_precipitation": 8,
            "weather_condition": "storm",
            "action": "postpone",
            "adjustment_days": 1,
        }])
        predicate = rules[0].predicate
        assert rules[0].name == "Conditions difficiles"
        assert predicate.holds(make_observation(wind_speed=45))
        assert predicate.holds(make_observation(precipitation=9))
        assert not predicate.holds(make_observation(wind_speed=20, precipitation=1))

    def test_legacy_rain_condition_matches_drizzle(self):
        rule = build_rules([{
            "rule_name": "Pluie", "weather_condition": "Rain", "action": "postpone", "adjustment_days": 1,
        }])[0]
        assert rule.predicate.holds(make_observation(condition="Moderate drizzle"))
        assert rule.predicate.holds(make_observation(condition="Slight rain showers"))
        assert not rule.predicate.holds(make_observation(condition="Fog"))

    def test_legacy_condition_keyword_inside_phrase(self):
        rule = build_rules([{
            "rule_name": "Neige", "weather_condition": "heavy snow", "action": "block",
        }])[0]
        assert rule.predicate.holds(make_observation(condition="Slight snow fall"))
        assert not rule.predicate.holds(make_observation(condition="Overcast"))

    def test_site_scope(self):
        rules = build_rules([
            {"name": "x", "predicate": "wind_speed > 1", "action": "block", "base_id": "base-sud"},
            {"name": "y", "predicate": "wind_speed > 2", "action": "block", "site_id": "base-nord"},
            {"name": "z", "predicate": "wind_speed > 3", "action": "block", "base_id": None},
        ])
        assert [r.site_id for r in rules] == ["base-sud", "base-nord", None]
        assert rules[0].applies_to("base-sud")
        assert not rules[0].applies_to("base-nord")
        assert rules[2].applies_to("base-nord")
        assert rules[0].to_dict()["site_id"] == "base-sud"

    @pytest.mark.parametrize("site_id", ["", "  ", 3])
    def test_invalid_site_scope(self, site_id):
        with pytest.raises(ConfigurationError):
            build_rules([{"name": "x", "predicate": "wind_speed > 1", "action": "block", "site_id": site_id}])

    def test_allow_rule_never_violated(self):
        rule = build_rules([{"name": "ok", "predicate": "wind_speed > 0", "action": "allow"}])[0]
        assert not rule.violated_by(make_observation(wind_speed=80))


class TestRuleBook:

    def test_loads_on_construction(self):
        book = RuleBook(static_rules({"name": "x", "predicate": "wind_speed > 1", "action": "block"}))
        assert [r.name for r in book.rules] == ["x"]

    def test_malformed_rules_fatal_at_startup(self):
        with pytest.raises(ConfigurationError):
            RuleBook(static_rules({"name": "x", "predicate": "humidity > 1", "action": "block"}))

    def test_failed_refresh_keeps_previous_rules(self):
        definitions = [{"name": "x", "predicate": "wind_speed > 1", "action": "block"}]
        book = RuleBook(lambda: definitions)

        definitions[0] = {"name": "x", "predicate": "wind_speed >", "action": "block"}
        with pytest.raises(ConfigurationError):
            book.refresh()
        assert [r.name for r in book.rules] == ["x"]

    def test_refresh_notifies_listeners(self):
        book = RuleBook(json_rule_source(None))
        calls = []
        book.on_refresh(lambda: calls.append("refreshed"))
        book.refresh()
        assert calls == ["refreshed"]

    def test_json_file_source(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"rules": [
            {"name": "gale", "predicate": "wind_speed > 60", "action": "block"},
        ]}))
        book = RuleBook(json_rule_source(str(path)))
        assert [r.name for r in book.rules] == ["gale"]

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_rule_definitions(str(tmp_path / "missing.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_rule_definitions(str(path))


def test_example_rule_file_loads():
    path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))),
                        "config", "weather_rules.example.json")
    rules = build_rules(load_rule_definitions(path))
    assert [r.name for r in rules] == ["storm", "gale", "strong_wind", "Pluie et froid"]
    assert rules[3].adjustment_days == 2
