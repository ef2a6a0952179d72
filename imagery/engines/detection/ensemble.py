"""
Ensemble Aggregator

Fans an image out to the selected model adapters, fails over to the backup
adapter when every other model failed, and combines the successful outcomes
into one weighted confidence score.
"""

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from imagery.core.config import settings
from imagery.core.exceptions import AllModelsUnavailableError
from imagery.core.logging import get_logger, with_logging
from imagery.engines.detection.adapters import ModelAdapter
from imagery.engines.detection.schemas import ModelOutcome, ModelRole, NormalizedImage, OutcomeLabel

logger = get_logger(__name__)


# Used when an adapter has no entry of its own in MODEL_WEIGHTS
ROLE_DEFAULT_WEIGHTS: Dict[ModelRole, float] = {
    ModelRole.PRIMARY: 3.0,
    ModelRole.FOOD: 3.0,
    ModelRole.BACKUP: 1.0,
}


@dataclass(frozen=True)
class EnsembleScore:
    score: float
    lean: OutcomeLabel
    fallback_triggered: bool
    successful: int
    failed: int
    ai_votes: int
    authentic_votes: int
    low_confidence: bool


def weight_for(outcome: ModelOutcome, weights: Mapping[str, float]) -> float:
    if outcome.model_name in weights:
        return float(weights[outcome.model_name])
    return ROLE_DEFAULT_WEIGHTS.get(outcome.role, 1.0)


def aggregate(outcomes: Sequence[ModelOutcome], weights: Mapping[str, float]) -> EnsembleScore:
    """
    Weighted confidence over the successful outcomes.

    Pure: the same outcomes and weights always give the same score.

    Raises:
        AllModelsUnavailableError: no outcome succeeded
    """
    successful = [o for o in outcomes if o.success]
    failed = len(outcomes) - len(successful)
    if not successful:
        raise AllModelsUnavailableError(
            details={"models_failed": failed, "errors": {o.model_name: o.error for o in outcomes}}
        )

    weighted = [(weight_for(o, weights), o) for o in successful]
    total_weight = sum(w for w, _ in weighted)
    if total_weight <= 0:
        raise AllModelsUnavailableError(
            "No successful model carries a positive weight",
            details={"models": [o.model_name for o in successful]}
        )
    score = round(sum(w * o.confidence for w, o in weighted) / total_weight, 1)

    non_backup = [o for o in outcomes if o.role is not ModelRole.BACKUP]
    fallback_triggered = (
        bool(non_backup)
        and not any(o.success for o in non_backup)
        and any(o.success and o.role is ModelRole.BACKUP for o in outcomes)
    )

    ai_votes = sum(1 for o in successful if o.label is OutcomeLabel.AI_GENERATED)
    authentic_votes = len(successful) - ai_votes

    return EnsembleScore(
        score=min(100.0, max(0.0, score)),
        lean=_lean(weighted),
        fallback_triggered=fallback_triggered,
        successful=len(successful),
        failed=failed,
        ai_votes=ai_votes,
        authentic_votes=authentic_votes,
        low_confidence=len(successful) < 2,
    )


def _lean(weighted: List[Tuple[float, ModelOutcome]]) -> OutcomeLabel:
    """Weighted vote per label; ties go to the strongest single outcome."""
    votes = {OutcomeLabel.AI_GENERATED: 0.0, OutcomeLabel.AUTHENTIC: 0.0}
    for w, o in weighted:
        votes[o.label] += w
    ai, authentic = votes[OutcomeLabel.AI_GENERATED], votes[OutcomeLabel.AUTHENTIC]
    if ai != authentic:
        return OutcomeLabel.AI_GENERATED if ai > authentic else OutcomeLabel.AUTHENTIC

    strongest = {OutcomeLabel.AI_GENERATED: 0.0, OutcomeLabel.AUTHENTIC: 0.0}
    for w, o in weighted:
        strongest[o.label] = max(strongest[o.label], w * o.confidence)
    if strongest[OutcomeLabel.AUTHENTIC] > strongest[OutcomeLabel.AI_GENERATED]:
        return OutcomeLabel.AUTHENTIC
    return OutcomeLabel.AI_GENERATED


class EnsembleAggregator:
    """Runs adapters concurrently and aggregates their outcomes."""

    def __init__(self, weights: Optional[Mapping[str, float]] = None):
        self.weights: Dict[str, float] = dict(settings.MODEL_WEIGHTS if weights is None else weights)

    @with_logging("ensemble")
    async def run(
        self,
        image: NormalizedImage,
        adapters: Sequence[ModelAdapter],
        backup: Optional[ModelAdapter] = None
    ) -> Tuple[List[ModelOutcome], EnsembleScore]:
        """Fan out, fail over to ``backup`` if needed, then aggregate."""
        outcomes: List[ModelOutcome] = list(
            await asyncio.gather(*(adapter.score(image) for adapter in adapters))
        )

        primaries = [o for o in outcomes if o.role is not ModelRole.BACKUP]
        backup_ok = any(o.success for o in outcomes if o.role is ModelRole.BACKUP)
        if backup is not None and primaries and not any(o.success for o in primaries) and not backup_ok:
            logger.warning(
                "ensemble_failover",
                failed_models=[o.model_name for o in primaries],
                backup=backup.name
            )
            outcomes = [o for o in outcomes if o.model_name != backup.name]
            outcomes.append(await backup.score(image))

        result = aggregate(outcomes, self.weights)
        logger.info(
            "ensemble_scored",
            score=result.score,
            lean=result.lean.value,
            models_succeeded=result.successful,
            models_failed=result.failed,
            fallback_triggered=result.fallback_triggered
        )
        return outcomes, result
