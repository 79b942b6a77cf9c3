# /app/workflows/conditions.py

"""
Pure predicates for `condition` steps.

A rule that cannot be evaluated (missing tag data, an unknown weekday name,
an unparseable time) counts as "does not match", so a condition step always
picks a branch deterministically.
"""

import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional

from app.models.flow import ConditionConfig, ConditionRule

WEEKDAYS = {
    "lunes": 0, "monday": 0,
    "martes": 1, "tuesday": 1,
    "miercoles": 2, "wednesday": 2,
    "jueves": 3, "thursday": 3,
    "viernes": 4, "friday": 4,
    "sabado": 5, "saturday": 5,
    "domingo": 6, "sunday": 6,
}


def _fold(value: str) -> str:
    """Lowercase and strip accents, so 'Miércoles' == 'miercoles'."""
    normalized = unicodedata.normalize("NFKD", value.strip().lower())
    return "".join(c for c in normalized if not unicodedata.combining(c))


def _contact_tags(variables: Dict[str, Any]) -> Optional[List[str]]:
    tags = variables.get("tags")
    if tags is None:
        return None
    if isinstance(tags, str):
        tags = [t for t in tags.split(",")]
    return [_fold(str(t)) for t in tags if str(t).strip()]


def _parse_hhmm(value: str) -> Optional[tuple]:
    try:
        hours, minutes = value.strip().split(":")[:2]
        hours, minutes = int(hours), int(minutes)
    except (ValueError, AttributeError):
        return None
    if not (0 <= hours < 24 and 0 <= minutes < 60):
        return None
    return hours, minutes


def _evaluate_positive(rule: ConditionRule, variables: Dict[str, Any], now: datetime) -> Optional[bool]:
    """Evaluates the rule as if its operator were `is`. None means unevaluable."""
    if rule.type == "tag":
        tags = _contact_tags(variables)
        if tags is None:
            return None
        return _fold(rule.value) in tags

    if rule.type == "weekday":
        day = WEEKDAYS.get(_fold(rule.value))
        if day is None:
            return None
        return now.weekday() == day

    if rule.type == "time":
        parsed = _parse_hhmm(rule.value)
        if parsed is None:
            return None
        return (now.hour, now.minute) >= parsed

    return None


def evaluate_rule(rule: ConditionRule, variables: Dict[str, Any], now: datetime) -> bool:
    result = _evaluate_positive(rule, variables, now)
    if result is None:
        return False
    return result if rule.operator == "is" else not result


def evaluate_condition(config: ConditionConfig, variables: Dict[str, Any], now: datetime) -> bool:
    """
    Evaluate every rule of a condition step.

    Args:
        config: Parsed condition configuration
        variables: Session variable bag (tags are read from `variables["tags"]`)
        now: Current time in the business timezone

    Returns:
        True when the step should follow its "cumple" branch
    """
    if not config.conditions:
        return False
    results = [evaluate_rule(rule, variables, now) for rule in config.conditions]
    return all(results) if config.match == "all" else any(results)
