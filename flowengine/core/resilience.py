"""Opt-in retry for remote collaborator calls.

LLM and tool calls are not guaranteed idempotent, so nothing is retried unless
the node asks for it with a ``retry`` block in its data::

    {"retry": {"max_attempts": 3, "initial_delay": 0.5}}
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from flowengine.core.errors import RemoteCallError, ValidationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    initial_delay: float = 2.0
    backoff_multiplier: float = 2.0
    max_delay: float = 60.0
    jitter: float = 0.1

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-indexed)."""
        delay = min(
            self.initial_delay * (self.backoff_multiplier**attempt),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(0.0, delay + jitter)

    @classmethod
    def from_node_data(
        cls, data: dict[str, Any], defaults: "RetryPolicy | None" = None
    ) -> "RetryPolicy | None":
        """Build a policy from a node's ``retry`` block, or None when absent."""
        retry = data.get("retry")
        if retry is None or retry is False:
            return None
        base = defaults or cls()
        if retry is True:
            return base
        if not isinstance(retry, dict):
            raise ValidationError("Node 'retry' field must be an object")

        unknown = set(retry) - set(RetrySettings.model_fields)
        if unknown:
            raise ValidationError(f"Unknown retry settings: {sorted(unknown)}")
        try:
            settings = RetrySettings.model_validate({**asdict(base), **retry})
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid retry settings: {e}") from e
        return settings.to_policy()


class RetrySettings(BaseModel):
    """Validated retry parameters, from config.yaml or a node's ``retry`` block."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=3, ge=1)
    initial_delay: float = Field(default=2.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=60.0, ge=0)
    jitter: float = Field(default=0.1, ge=0, le=1)

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(**self.model_dump())


async def call_with_retry(
    func: Callable[[], Awaitable[T]],
    policy: RetryPolicy | None,
    description: str = "remote call",
) -> T:
    """Await ``func()``, retrying RemoteCallError according to ``policy``.

    Without a policy the call is made exactly once. Errors other than
    RemoteCallError propagate immediately.
    """
    attempts = policy.max_attempts if policy else 1
    last_error: RemoteCallError | None = None

    for attempt in range(attempts):
        try:
            return await func()
        except RemoteCallError as e:
            last_error = e
            if attempt + 1 >= attempts:
                break
            delay = policy.get_delay(attempt) if policy else 0.0
            logger.warning(
                f"{description} failed (attempt {attempt + 1}/{attempts}): {e}. "
                f"Retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)

    assert last_error is not None
    raise last_error
