"""Tests for RetryPolicy and call_with_retry."""

from unittest.mock import AsyncMock, patch

import pytest

from flowengine.core.errors import RemoteCallError, ValidationError
from flowengine.core.resilience import RetryPolicy, call_with_retry


class TestRetryPolicy:
    def test_default_values(self):
        policy = RetryPolicy()
        assert policy.max_attempts == 3
        assert policy.initial_delay == 2.0
        assert policy.backoff_multiplier == 2.0
        assert policy.max_delay == 60.0
        assert policy.jitter == 0.1

    def test_exponential_backoff_calculation(self):
        """Delay doubles per attempt and is capped at max_delay."""
        policy = RetryPolicy(initial_delay=2.0, backoff_multiplier=2.0, max_delay=10.0, jitter=0.0)

        assert policy.get_delay(0) == 2.0
        assert policy.get_delay(1) == 4.0
        assert policy.get_delay(2) == 8.0
        assert policy.get_delay(3) == 10.0

    def test_jitter_stays_in_range(self):
        policy = RetryPolicy(initial_delay=10.0, jitter=0.1)
        for _ in range(20):
            assert 9.0 <= policy.get_delay(0) <= 11.0


class TestFromNodeData:
    def test_absent_means_no_retry(self):
        assert RetryPolicy.from_node_data({}) is None
        assert RetryPolicy.from_node_data({"retry": False}) is None

    def test_true_uses_defaults(self):
        defaults = RetryPolicy(max_attempts=7)
        assert RetryPolicy.from_node_data({"retry": True}, defaults) is defaults

    def test_overrides_merge_with_defaults(self):
        policy = RetryPolicy.from_node_data(
            {"retry": {"max_attempts": 5}}, RetryPolicy(initial_delay=0.25)
        )
        assert policy.max_attempts == 5
        assert policy.initial_delay == 0.25

    def test_unknown_setting(self):
        with pytest.raises(ValidationError, match="Unknown retry settings"):
            RetryPolicy.from_node_data({"retry": {"attempts": 2}})

    def test_attempts_must_be_positive(self):
        with pytest.raises(ValidationError, match="Invalid retry settings"):
            RetryPolicy.from_node_data({"retry": {"max_attempts": 0}})

    def test_wrong_type_is_validation_error(self):
        with pytest.raises(ValidationError, match="Invalid retry settings") as exc_info:
            RetryPolicy.from_node_data({"retry": {"max_attempts": "three"}})

        assert "max_attempts" in exc_info.value.message

    def test_numeric_strings_are_coerced(self):
        policy = RetryPolicy.from_node_data({"retry": {"max_attempts": "3", "jitter": "0"}})

        assert policy.max_attempts == 3
        assert policy.jitter == 0.0


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_without_policy_calls_once(self):
        func = AsyncMock(side_effect=RemoteCallError("down"))

        with pytest.raises(RemoteCallError):
            await call_with_retry(func, None)

        assert func.await_count == 1

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        func = AsyncMock(side_effect=[RemoteCallError("a"), RemoteCallError("b"), "ok"])
        policy = RetryPolicy(max_attempts=3, jitter=0.0)

        with patch("flowengine.core.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            assert await call_with_retry(func, policy) == "ok"

        assert func.await_count == 3
        assert [c.args[0] for c in sleep.await_args_list] == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_gives_up_with_last_error(self):
        func = AsyncMock(side_effect=[RemoteCallError("first"), RemoteCallError("last")])
        policy = RetryPolicy(max_attempts=2, initial_delay=0.0, jitter=0.0)

        with pytest.raises(RemoteCallError, match="last"):
            await call_with_retry(func, policy)

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        func = AsyncMock(side_effect=ValidationError("bad input"))
        policy = RetryPolicy(max_attempts=3, initial_delay=0.0)

        with pytest.raises(ValidationError):
            await call_with_retry(func, policy)

        assert func.await_count == 1
