"""
Condition Evaluator
===================

Decides whether a due reminder may be delivered this cycle.

The engine does not interpret condition semantics. Each condition type is
resolved through a ConditionRegistry of async predicates supplied by the
host application (task lookups, presence, location, ...). The evaluator only
orchestrates order and combination:

- No conditions, or only inactive ones: deliver
- Every active condition must pass (AND, in list order, short-circuit)
- A missing predicate or a predicate error counts as "not met"; it is logged
  and never propagates to the sweep
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional

from tickler.db.models.reminder import (
    Condition,
    ConditionOperator,
    CustomCondition,
    Reminder,
    utcnow,
)
from tickler.services.exceptions import ConditionEvaluationError

logger = logging.getLogger(__name__)


@dataclass
class ConditionContext:
    """What a predicate gets to look at besides the condition itself."""
    reminder: Reminder
    now: datetime
    extra: Dict[str, Any] = field(default_factory=dict)


ConditionPredicate = Callable[[Any, ConditionContext], Awaitable[bool]]


def compare(operator: ConditionOperator, actual: Any, expected: Any) -> bool:
    """
    Apply a condition operator. Offered to predicate authors so every
    predicate compares values the same way.
    """
    if operator == ConditionOperator.EQUALS:
        return actual == expected
    if operator == ConditionOperator.NOT_EQUALS:
        return actual != expected
    if operator == ConditionOperator.GREATER_THAN:
        return actual > expected
    if operator == ConditionOperator.LESS_THAN:
        return actual < expected
    if operator == ConditionOperator.CONTAINS:
        return expected in actual
    raise ValueError(f"Unsupported operator: {operator}")


def _registry_key(condition: Condition) -> str:
    if isinstance(condition, CustomCondition):
        return f"custom:{condition.name}"
    return condition.type


class ConditionRegistry:
    """
    Maps condition types to predicates.

    Custom conditions are keyed by their name:

        registry.register("task_status", task_status_predicate)
        registry.register_custom("quiet_hours", quiet_hours_predicate)
    """

    def __init__(self):
        self._predicates: Dict[str, ConditionPredicate] = {}

    def register(self, condition_type: str, predicate: ConditionPredicate) -> None:
        self._predicates[condition_type] = predicate
        logger.debug(f"Registered condition predicate: {condition_type}")

    def register_custom(self, name: str, predicate: ConditionPredicate) -> None:
        self.register(f"custom:{name}", predicate)

    def get(self, key: str) -> Optional[ConditionPredicate]:
        return self._predicates.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._predicates

    async def evaluate(self, condition: Condition, context: ConditionContext) -> bool:
        """
        Evaluate one condition.

        Raises:
            ConditionEvaluationError: No predicate registered, or it failed
        """
        key = _registry_key(condition)
        predicate = self._predicates.get(key)
        if predicate is None:
            raise ConditionEvaluationError(
                condition_type=key,
                message="No predicate registered for condition type",
            )
        try:
            return bool(await predicate(condition, context))
        except Exception as e:
            raise ConditionEvaluationError(
                condition_type=key,
                message=f"Predicate raised: {e}",
                original_error=e,
            ) from e


class ConditionEvaluator:
    """Gates delivery on a reminder's configured conditions."""

    def __init__(self, registry: Optional[ConditionRegistry] = None):
        self.registry = registry if registry is not None else ConditionRegistry()

    async def should_deliver(
        self,
        reminder: Reminder,
        now: Optional[datetime] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        conditions = reminder.settings.conditions
        if not conditions:
            return True

        context = ConditionContext(reminder=reminder, now=now or utcnow(), extra=extra or {})

        for index, condition in enumerate(conditions):
            if not condition.active:
                continue
            try:
                met = await self.registry.evaluate(condition, context)
            except ConditionEvaluationError as e:
                logger.warning(
                    f"Condition {index} on reminder {reminder.id} could not be "
                    f"evaluated, suppressing delivery: {e}"
                )
                return False
            if not met:
                logger.info(
                    f"Condition {index} ({condition.type}) not met for reminder {reminder.id}"
                )
                return False

        return True
