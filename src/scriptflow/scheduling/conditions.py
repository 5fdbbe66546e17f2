# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Condition evaluation for conditional schedules.

Tab and clock facts are resolved here; storage, cookie and custom facts come
from an optional async provider supplied by the host integration.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Iterable, Optional
from urllib.parse import urlsplit

from scriptflow.scheduling.next_fire import resolve_timezone
from scriptflow.schemas import ScheduleCondition

logger = logging.getLogger(__name__)

FactProvider = Callable[[ScheduleCondition, Optional[int]], Awaitable[Any]]

TRUE_VALUES = ("true", "1", "yes", "on")
FALSE_VALUES = ("false", "0", "no", "off")


@dataclass(frozen=True)
class ConditionFacts:
    """Snapshot of the facts conditions are checked against."""

    now: int  # epoch ms
    timezone: str = "UTC"
    tab_id: Optional[int] = None
    url: str = ""
    title: str = ""


def _as_text(value: Any, case_sensitive: bool) -> str:
    if value is None:
        text = ""
    elif isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)
    return text if case_sensitive else text.lower()


def _as_number(value: Any) -> float:
    """Numbers, numeric strings and HH:MM times (as minutes)."""
    if isinstance(value, bool):
        raise ValueError("booleans are not numbers")
    if isinstance(value, str) and ":" in value:
        hours, minutes = value.strip().split(":", 1)
        return int(hours) * 60 + int(minutes)
    return float(value)


def apply_operator(operator: str, actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
    """Evaluate one operator against an actual and expected value."""
    if operator == "is_empty":
        return actual is None or _as_text(actual, True).strip() == ""
    if operator == "is_not_empty":
        return not apply_operator("is_empty", actual, expected)
    if operator == "is_true":
        return actual is True or _as_text(actual, False) in TRUE_VALUES
    if operator == "is_false":
        return actual is False or _as_text(actual, False) in FALSE_VALUES

    if operator in ("greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal"):
        try:
            left, right = _as_number(actual), _as_number(expected)
        except (TypeError, ValueError):
            return False
        if operator == "greater_than":
            return left > right
        if operator == "less_than":
            return left < right
        if operator == "greater_than_or_equal":
            return left >= right
        return left <= right

    if operator == "regex":
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            return re.search(str(expected), _as_text(actual, True), flags) is not None
        except re.error as e:
            logger.warning(f"Invalid condition regex {expected!r}: {e}")
            return False

    left = _as_text(actual, case_sensitive)
    right = _as_text(expected, case_sensitive)
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "contains":
        return right in left
    if operator == "not_contains":
        return right not in left
    if operator == "starts_with":
        return left.startswith(right)
    if operator == "ends_with":
        return left.endswith(right)

    logger.warning(f"Unknown condition operator: {operator}")
    return False


class ConditionEvaluator:
    """Resolves condition facts and checks condition lists."""

    def __init__(self, provider: Optional[FactProvider] = None):
        self.provider = provider

    async def resolve(self, condition: ScheduleCondition, facts: ConditionFacts) -> Any:
        source = condition.source
        if source == "url":
            return facts.url
        if source == "title":
            return facts.title
        if source == "domain":
            try:
                return urlsplit(facts.url).hostname or ""
            except ValueError:
                return ""

        local = datetime.fromtimestamp(facts.now / 1000, resolve_timezone(facts.timezone))
        if source == "time":
            return local.strftime("%H:%M")
        if source == "day_of_week":
            return (local.weekday() + 1) % 7  # Sunday = 0
        if source == "day_of_month":
            return local.day
        if source == "month":
            return local.month
        if source == "year":
            return local.year

        if self.provider is None:
            return None
        return await self.provider(condition, facts.tab_id)

    async def evaluate(self, condition: ScheduleCondition, facts: ConditionFacts) -> bool:
        actual = await self.resolve(condition, facts)
        return apply_operator(condition.operator, actual, condition.value, condition.case_sensitive)

    async def evaluate_all(self, conditions: Iterable[ScheduleCondition], facts: ConditionFacts) -> bool:
        """True only when every condition holds."""
        for condition in conditions:
            if not await self.evaluate(condition, facts):
                logger.debug(f"Condition {condition.source} {condition.operator} not met")
                return False
        return True
