"""
Tests for the Condition Evaluator
=================================

Run with: pytest tests/test_conditions.py -v
"""

import os
import sys
from unittest.mock import AsyncMock

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from tickler.db.models.reminder import (
    ConditionOperator,
    CustomCondition,
    ReminderSettings,
    TaskStatusCondition,
    UserOnlineCondition,
)
from tickler.engine.conditions import (
    ConditionEvaluator,
    ConditionRegistry,
    compare,
)
from tickler.services.exceptions import ConditionEvaluationError


def with_conditions(make_reminder, *conditions):
    return make_reminder(settings=ReminderSettings(conditions=list(conditions)))


@pytest.fixture
def registry():
    return ConditionRegistry()


# =============================================================================
# Unit Tests: compare()
# =============================================================================

class TestCompare:

    @pytest.mark.parametrize("operator,actual,expected,result", [
        (ConditionOperator.EQUALS, "done", "done", True),
        (ConditionOperator.NOT_EQUALS, "done", "open", True),
        (ConditionOperator.GREATER_THAN, 5, 3, True),
        (ConditionOperator.LESS_THAN, 5, 3, False),
        (ConditionOperator.CONTAINS, ["a", "b"], "b", True),
    ])
    def test_operators(self, operator, actual, expected, result):
        assert compare(operator, actual, expected) is result


# =============================================================================
# Unit Tests: should_deliver
# =============================================================================

class TestShouldDeliver:

    @pytest.mark.asyncio
    async def test_no_conditions_delivers(self, make_reminder, registry):
        evaluator = ConditionEvaluator(registry)
        assert await evaluator.should_deliver(make_reminder()) is True

    @pytest.mark.asyncio
    async def test_inactive_conditions_are_skipped(self, make_reminder, registry):
        predicate = AsyncMock(return_value=False)
        registry.register("task_status", predicate)
        reminder = with_conditions(
            make_reminder, TaskStatusCondition(value="done", active=False)
        )

        assert await ConditionEvaluator(registry).should_deliver(reminder) is True
        predicate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_all_active_conditions_must_pass(self, make_reminder, registry):
        registry.register("task_status", AsyncMock(return_value=True))
        registry.register("user_online", AsyncMock(return_value=False))
        reminder = with_conditions(
            make_reminder,
            TaskStatusCondition(value="done"),
            UserOnlineCondition(value=True),
        )

        assert await ConditionEvaluator(registry).should_deliver(reminder) is False

    @pytest.mark.asyncio
    async def test_short_circuits_on_first_failure(self, make_reminder, registry):
        second = AsyncMock(return_value=True)
        registry.register("task_status", AsyncMock(return_value=False))
        registry.register("user_online", second)
        reminder = with_conditions(
            make_reminder,
            TaskStatusCondition(value="done"),
            UserOnlineCondition(value=True),
        )

        await ConditionEvaluator(registry).should_deliver(reminder)
        second.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_predicate_receives_condition_and_context(self, make_reminder, registry, now):
        predicate = AsyncMock(return_value=True)
        registry.register("task_status", predicate)
        condition = TaskStatusCondition(value="done")
        reminder = with_conditions(make_reminder, condition)

        await ConditionEvaluator(registry).should_deliver(reminder, now=now, extra={"k": 1})

        received_condition, context = predicate.await_args.args
        assert received_condition.value == "done"
        assert context.reminder.id == reminder.id
        assert context.now == now
        assert context.extra == {"k": 1}

    @pytest.mark.asyncio
    async def test_custom_conditions_resolve_by_name(self, make_reminder, registry):
        registry.register_custom("quiet_hours", AsyncMock(return_value=True))
        reminder = with_conditions(make_reminder, CustomCondition(name="quiet_hours"))

        assert await ConditionEvaluator(registry).should_deliver(reminder) is True


# =============================================================================
# Unit Tests: Errors
# =============================================================================

class TestEvaluationErrors:

    @pytest.mark.asyncio
    async def test_missing_predicate_suppresses(self, make_reminder, registry):
        reminder = with_conditions(make_reminder, TaskStatusCondition(value="done"))
        assert await ConditionEvaluator(registry).should_deliver(reminder) is False

    @pytest.mark.asyncio
    async def test_raising_predicate_suppresses(self, make_reminder, registry):
        registry.register("task_status", AsyncMock(side_effect=RuntimeError("db down")))
        reminder = with_conditions(make_reminder, TaskStatusCondition(value="done"))

        assert await ConditionEvaluator(registry).should_deliver(reminder) is False

    @pytest.mark.asyncio
    async def test_registry_raises_typed_error(self, make_reminder, registry, now):
        from tickler.engine.conditions import ConditionContext

        registry.register("task_status", AsyncMock(side_effect=RuntimeError("db down")))
        condition = TaskStatusCondition(value="done")

        with pytest.raises(ConditionEvaluationError) as exc_info:
            await registry.evaluate(condition, ConditionContext(make_reminder(), now))

        assert exc_info.value.context["condition_type"] == "task_status"
        assert isinstance(exc_info.value.original_error, RuntimeError)
