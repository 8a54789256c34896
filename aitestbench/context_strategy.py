"""Resolve the context window budget of a run."""

import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from aitestbench.models.definition import ContextStrategy, TruncationPolicy


@dataclass(frozen=True, kw_only=True)
class ContextBudget:
    """Effective context settings of a run.

    ``ramp_sequence`` lists budgets to try in order; it is carried through to
    the result document but not swept by the executor.
    """

    max_context_tokens: int | None
    truncation_policy: TruncationPolicy = "warn"
    ramp_sequence: Sequence[int] = field(default_factory=tuple)


def resolve_context_strategy(
    declared_max_tokens: int | None,
    strategy: ContextStrategy | None = None,
) -> ContextBudget:
    """Combine a model's declared context size with a profile strategy."""
    if strategy is None:
        return ContextBudget(max_context_tokens=declared_max_tokens)

    policy = strategy.truncation_policy

    if strategy.type == "percentage" and declared_max_tokens:
        percent = strategy.value if strategy.value is not None else 100
        return ContextBudget(
            max_context_tokens=math.floor(percent / 100 * declared_max_tokens),
            truncation_policy=policy,
        )

    if strategy.type == "ramp":
        return ContextBudget(
            max_context_tokens=declared_max_tokens,
            truncation_policy=policy,
            ramp_sequence=tuple(strategy.ramp),
        )

    value = int(strategy.value) if strategy.value is not None else declared_max_tokens
    return ContextBudget(max_context_tokens=value, truncation_policy=policy)
