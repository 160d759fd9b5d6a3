"""Promotion strategy evaluation.

Decides, from an environment record alone, whether a promotion proceeds and
whether the resulting pull request should be auto-merged:

- Never: no-op, not an error
- Manual: pull request, no auto-merge
- Automatic: pull request plus auto-merge, unless the caller disabled it

The caller's flag can only disable auto-merge, never enable it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .models import Environment, EnvironmentKind, PromotionStrategy


@dataclass(frozen=True)
class StrategyDecision:
    """Outcome of evaluating an environment's promotion strategy."""

    proceed: bool
    auto_merge: bool
    strategy: PromotionStrategy
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "proceed": self.proceed,
            "auto_merge": self.auto_merge,
            "strategy": self.strategy.value,
            "reason": self.reason,
        }


class PromotionStrategyEvaluator:
    """Pure evaluation over an environment state snapshot."""

    def evaluate(
        self, environment: Environment, *, disable_auto_merge: bool = False
    ) -> StrategyDecision:
        """Evaluate the strategy of one environment.

        Args:
            environment: Environment record.
            disable_auto_merge: Caller opted out of polling/auto-merge.

        Returns:
            The decision for this environment.
        """
        strategy = environment.promotion_strategy

        if strategy == PromotionStrategy.NEVER:
            return StrategyDecision(
                proceed=False,
                auto_merge=False,
                strategy=strategy,
                reason=f"Environment '{environment.name}' has promotion strategy Never",
            )

        if strategy == PromotionStrategy.MANUAL:
            return StrategyDecision(
                proceed=True,
                auto_merge=False,
                strategy=strategy,
                reason="Manual promotion: pull request requires a human merge",
            )

        if disable_auto_merge:
            return StrategyDecision(
                proceed=True,
                auto_merge=False,
                strategy=strategy,
                reason="Automatic promotion with auto-merge disabled by caller",
            )

        return StrategyDecision(
            proceed=True,
            auto_merge=True,
            strategy=strategy,
            reason="Automatic promotion",
        )

    def select_automatic(self, environments: list[Environment]) -> list[Environment]:
        """Select the fan-out targets for "promote to all automatic environments".

        Only permanent environments take part; development, preview and
        test environments are never fan-out targets.
        """
        selected = [
            env
            for env in environments
            if env.promotion_strategy == PromotionStrategy.AUTOMATIC
            and env.kind == EnvironmentKind.PERMANENT
        ]
        return sorted(selected, key=lambda env: (env.order, env.name))
