"""
Strategy Recommender

Scores every catalog strategy against a structured error and returns the
best candidates as suggestions.
"""

import logging
from typing import Dict, List, Optional

from .events import RecoveryEventBus, RecoveryEventType
from .models import (
    AutoRecoveryConfig,
    ErrorCategory,
    ErrorSeverity,
    EstimatedImpact,
    RecoveryStepType,
    RecoveryStrategy,
    RecoverySuggestion,
    RiskLevel,
    RootCauseAnalysis,
    StructuredError,
)
from .policy import should_automate
from .strategies import StrategyCatalog
from .templates import condition_matches

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.3
MAX_SUGGESTIONS = 5
MAX_ALTERNATIVES = 3
ROOT_CAUSE_BOOST = 0.2

# Causes each strategy category is known to address
CATEGORY_CAUSES: Dict[ErrorCategory, List[str]] = {
    ErrorCategory.DATABASE: ["database connection", "database performance", "connection pool"],
    ErrorCategory.SYSTEM: ["memory exhaustion", "resource constraints", "system overload"],
    ErrorCategory.TRADING: ["market connectivity", "trading session", "order gateway"],
    ErrorCategory.AUTHENTICATION: ["token issues", "session management", "auth service"],
}


def _clamp(value: float) -> float:
    return max(0.0, min(value, 1.0))


def condition_confidence(strategy: RecoveryStrategy, error: StructuredError) -> float:
    """Matched condition weight over total weight; 0 when there is nothing to weigh."""
    total = 0.0
    matched = 0.0
    for condition in strategy.applicable_conditions:
        total += condition.weight
        if condition_matches(condition, error):
            matched += condition.weight
    return matched / total if total > 0 else 0.0


def root_cause_alignment(strategy: RecoveryStrategy, root_cause: Optional[RootCauseAnalysis]) -> float:
    """Flat boost when an identified cause mentions one of the strategy's causes."""
    if root_cause is None:
        return 0.0

    identified = [c.cause.lower() for c in root_cause.possible_causes]
    for keyword in CATEGORY_CAUSES.get(strategy.category, []):
        if any(keyword in cause for cause in identified):
            return ROOT_CAUSE_BOOST
    return 0.0


def strategy_confidence(
    strategy: RecoveryStrategy,
    error: StructuredError,
    root_cause: Optional[RootCauseAnalysis] = None,
) -> float:
    adjusted = condition_confidence(strategy, error) * strategy.success_rate
    return _clamp(adjusted + root_cause_alignment(strategy, root_cause))


def estimate_impact(strategy: RecoveryStrategy, error: StructuredError) -> EstimatedImpact:
    if strategy.risk_level == RiskLevel.HIGH or any(
        step.type == RecoveryStepType.RESTART_SERVICE for step in strategy.steps
    ):
        return EstimatedImpact.HIGH

    if any(step.rollback_required for step in strategy.steps) or error.severity == ErrorSeverity.CRITICAL:
        return EstimatedImpact.MEDIUM

    return EstimatedImpact.LOW


def generate_reasoning(strategy: RecoveryStrategy, error: StructuredError, confidence: float) -> str:
    reasons: List[str] = []

    if strategy.category == error.category:
        reasons.append(f"Matches error category ({error.category.value})")

    if confidence > 0.8:
        reasons.append("High confidence match based on error patterns")
    elif confidence > 0.6:
        reasons.append("Good match based on error characteristics")
    else:
        reasons.append("Partial match - may be applicable")

    if strategy.success_rate > 0.8:
        reasons.append(f"Historical success rate: {round(strategy.success_rate * 100)}%")

    if strategy.risk_level == RiskLevel.LOW:
        reasons.append("Low risk recovery strategy")

    return ". ".join(reasons)


class StrategyRecommender:
    """
    Ranks catalog strategies for an error.

    Only strategies scoring above 0.3 are suggested, at most five,
    highest confidence first.
    """

    def __init__(
        self,
        catalog: StrategyCatalog,
        config: AutoRecoveryConfig,
        events: Optional[RecoveryEventBus] = None,
    ):
        self.catalog = catalog
        self.config = config
        self.events = events

    def confidence_for(
        self,
        strategy: RecoveryStrategy,
        error: StructuredError,
        root_cause: Optional[RootCauseAnalysis] = None,
    ) -> float:
        return strategy_confidence(strategy, error, root_cause)

    def find_alternatives(self, strategy: RecoveryStrategy) -> List[str]:
        """Names of same-category strategies that carry a different risk level."""
        alternatives = [
            other.name
            for other in self.catalog.list()
            if other.id != strategy.id
            and other.category == strategy.category
            and other.risk_level != strategy.risk_level
        ]
        return alternatives[:MAX_ALTERNATIVES]

    def rank(
        self,
        error: StructuredError,
        root_cause: Optional[RootCauseAnalysis] = None,
    ) -> List[RecoverySuggestion]:
        suggestions: List[RecoverySuggestion] = []
        for strategy in self.catalog.list():
            confidence = strategy_confidence(strategy, error, root_cause)
            if confidence <= MIN_CONFIDENCE:
                continue

            suggestions.append(
                RecoverySuggestion(
                    strategy_id=strategy.id,
                    confidence=confidence,
                    reasoning=generate_reasoning(strategy, error, confidence),
                    estimated_impact=estimate_impact(strategy, error),
                    automation_recommended=should_automate(strategy, error, confidence, self.config),
                    prerequisites=list(strategy.prerequisites),
                    alternatives=self.find_alternatives(strategy),
                )
            )

        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions

    async def suggest(
        self,
        error: StructuredError,
        root_cause: Optional[RootCauseAnalysis] = None,
    ) -> List[RecoverySuggestion]:
        """Top suggestions for ``error``. Never raises; failures yield []."""
        try:
            suggestions = self.rank(error, root_cause)
        except Exception as e:  # noqa: BLE001
            logger.error(f"Failed to suggest recovery strategies for {getattr(error, 'id', None)}: {e}")
            return []

        if self.events is not None:
            await self.events.emit(
                RecoveryEventType.SUGGESTIONS_GENERATED,
                {
                    "errorId": error.id,
                    "suggestionsCount": len(suggestions),
                    "topSuggestion": suggestions[0].to_dict() if suggestions else None,
                },
            )

        return suggestions[:MAX_SUGGESTIONS]
