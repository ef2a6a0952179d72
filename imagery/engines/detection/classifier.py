"""
Classifier

Maps the ensemble score and lean to the final three-valued label.
"""

from typing import Optional

from imagery.core.exceptions import InvalidOptionsError
from imagery.engines.detection.schemas import Classification, ClientConfig, OutcomeLabel, ProcessingOptions

# Scores below this are never reported as a definite verdict
CONFIDENCE_THRESHOLD = 70.0


def classify(score: float, lean: OutcomeLabel, threshold: float = CONFIDENCE_THRESHOLD) -> Classification:
    """
    score >= threshold -> the ensemble's lean (AI-Generated or Authentic)
    score <  threshold -> Uncertain

    A single-model (low_confidence) ensemble is not penalised here: the label
    depends only on score and lean, and the weakness is reported to callers
    through ProcessingMetadata.low_confidence.
    """
    if score < threshold:
        return Classification.UNCERTAIN
    if lean is OutcomeLabel.AI_GENERATED:
        return Classification.AI_GENERATED
    if lean is OutcomeLabel.AUTHENTIC:
        return Classification.AUTHENTIC
    return Classification.UNCERTAIN


def resolve_threshold(
    options: Optional[ProcessingOptions] = None,
    client_config: Optional[ClientConfig] = None
) -> float:
    """Request override, then client configuration, then the fixed default."""
    threshold = None
    if options is not None and options.confidence_threshold is not None:
        threshold = options.confidence_threshold
    elif client_config is not None and client_config.confidence_threshold is not None:
        threshold = client_config.confidence_threshold

    if threshold is None:
        return CONFIDENCE_THRESHOLD
    if not (0.0 < threshold <= 100.0):
        raise InvalidOptionsError(
            f"Confidence threshold {threshold} is outside (0, 100]",
            details={"confidence_threshold": threshold}
        )
    return float(threshold)
