import pytest

from imagery.core.exceptions import AllModelsUnavailableError
from imagery.engines.detection.classifier import classify
from imagery.engines.detection.ensemble import EnsembleAggregator, aggregate
from imagery.engines.detection.schemas import (
    Classification,
    ImageFormat,
    ModelOutcome,
    ModelRole,
    NormalizedImage,
    OutcomeLabel,
)


def outcome(name, role=ModelRole.PRIMARY, label="ai_generated", confidence=80.0, success=True):
    return ModelOutcome(
        model_name=name,
        model_version="1",
        role=role,
        label=OutcomeLabel(label) if success else OutcomeLabel.ERROR,
        confidence=confidence if success else 0.0,
        elapsed_ms=1.0,
        success=success,
        error=None if success else "boom"
    )


@pytest.fixture
def image(pixels_factory):
    return NormalizedImage(pixels=pixels_factory((64, 64)), source_format=ImageFormat.PNG, original_size=(64, 64))


# =============================================================================
# aggregate
# =============================================================================

def test_weighted_mean_over_successful_outcomes():
    outcomes = [
        outcome("a", confidence=80.0),
        outcome("b", role=ModelRole.FOOD, confidence=75.0),
        outcome("c", role=ModelRole.BACKUP, confidence=40.0),
    ]

    result = aggregate(outcomes, {"a": 3.0, "b": 2.0, "c": 1.0})

    # (80*3 + 75*2 + 40*1) / 6
    assert result.score == 71.7
    assert result.successful == 3
    assert result.low_confidence is False


def test_score_just_under_the_boundary_is_uncertain():
    outcomes = [outcome("a", confidence=80.0), outcome("b", confidence=58.6)]

    result = aggregate(outcomes, {"a": 1.0, "b": 1.0})

    assert result.score == 69.3
    assert classify(result.score, result.lean) is Classification.UNCERTAIN


def test_aggregate_is_pure():
    outcomes = [outcome("a", confidence=91.0), outcome("b", label="authentic", confidence=66.0)]
    weights = {"a": 3.0, "b": 1.0}
    snapshot = list(outcomes)

    first = aggregate(outcomes, weights)
    second = aggregate(outcomes, weights)

    assert first == second
    assert outcomes == snapshot
    assert weights == {"a": 3.0, "b": 1.0}


def test_failed_outcomes_do_not_count():
    outcomes = [outcome("a", confidence=90.0), outcome("b", success=False)]

    result = aggregate(outcomes, {"a": 3.0, "b": 3.0})

    assert result.score == 90.0
    assert result.failed == 1
    assert result.low_confidence is True


def test_no_successes_raises_all_models_unavailable():
    with pytest.raises(AllModelsUnavailableError) as exc_info:
        aggregate([outcome("a", success=False), outcome("b", role=ModelRole.BACKUP, success=False)], {})
    assert exc_info.value.error_code == "ALL_MODELS_UNAVAILABLE"
    assert exc_info.value.retriable is True


def test_fallback_flag_when_only_backup_succeeded():
    outcomes = [
        outcome("primary", success=False),
        outcome("food", role=ModelRole.FOOD, success=False),
        outcome("backup", role=ModelRole.BACKUP, confidence=72.0),
    ]

    result = aggregate(outcomes, {})

    assert result.fallback_triggered is True
    assert result.score == 72.0


def test_no_fallback_when_a_primary_succeeded():
    outcomes = [outcome("primary"), outcome("backup", role=ModelRole.BACKUP)]
    assert aggregate(outcomes, {}).fallback_triggered is False


def test_no_fallback_when_backup_was_the_only_model_asked():
    assert aggregate([outcome("backup", role=ModelRole.BACKUP)], {}).fallback_triggered is False


def test_unknown_names_use_role_default_weights():
    outcomes = [outcome("x", role=ModelRole.PRIMARY, confidence=90.0), outcome("y", role=ModelRole.BACKUP, confidence=50.0)]

    # primary 3.0, backup 1.0 -> (270 + 50) / 4
    assert aggregate(outcomes, {}).score == 80.0


def test_lean_follows_weighted_vote():
    outcomes = [
        outcome("a", label="authentic", confidence=70.0),
        outcome("b", label="ai_generated", confidence=99.0),
    ]
    result = aggregate(outcomes, {"a": 3.0, "b": 1.0})

    assert result.lean is OutcomeLabel.AUTHENTIC
    assert (result.ai_votes, result.authentic_votes) == (1, 1)


def test_lean_tie_goes_to_strongest_outcome():
    outcomes = [
        outcome("a", label="authentic", confidence=95.0),
        outcome("b", label="ai_generated", confidence=80.0),
    ]
    assert aggregate(outcomes, {"a": 1.0, "b": 1.0}).lean is OutcomeLabel.AUTHENTIC


def test_exact_tie_leans_ai_generated():
    outcomes = [
        outcome("a", label="authentic", confidence=80.0),
        outcome("b", label="ai_generated", confidence=80.0),
    ]
    assert aggregate(outcomes, {"a": 1.0, "b": 1.0}).lean is OutcomeLabel.AI_GENERATED


# =============================================================================
# EnsembleAggregator
# =============================================================================

@pytest.mark.asyncio
async def test_run_fans_out_to_all_selected(image, adapter_factory):
    primary = adapter_factory("primary", ModelRole.PRIMARY, confidence=90.0)
    food = adapter_factory("food", ModelRole.FOOD, confidence=80.0)
    backup = adapter_factory("backup", ModelRole.BACKUP, confidence=60.0)

    outcomes, score = await EnsembleAggregator().run(image, [primary, food, backup], backup)

    assert [o.model_name for o in outcomes] == ["primary", "food", "backup"]
    assert (primary.calls, food.calls, backup.calls) == (1, 1, 1)
    assert score.fallback_triggered is False


@pytest.mark.asyncio
async def test_run_invokes_backup_when_everything_else_failed(image, adapter_factory):
    primary = adapter_factory("primary", ModelRole.PRIMARY, fail=True)
    food = adapter_factory("food", ModelRole.FOOD, fail=True)
    backup = adapter_factory("backup", ModelRole.BACKUP, label="authentic", confidence=75.0)

    outcomes, score = await EnsembleAggregator().run(image, [primary, food], backup)

    assert backup.calls == 1
    assert outcomes[-1].model_name == "backup"
    assert score.fallback_triggered is True
    assert score.lean is OutcomeLabel.AUTHENTIC


@pytest.mark.asyncio
async def test_run_retries_backup_that_failed_in_fanout(image, adapter_factory):
    primary = adapter_factory("primary", ModelRole.PRIMARY, fail=True)
    backup = adapter_factory("backup", ModelRole.BACKUP, fail=True)

    with pytest.raises(AllModelsUnavailableError):
        await EnsembleAggregator().run(image, [primary, backup], backup)

    assert backup.calls == 2


@pytest.mark.asyncio
async def test_run_does_not_call_backup_twice_when_it_succeeded(image, adapter_factory):
    primary = adapter_factory("primary", ModelRole.PRIMARY, fail=True)
    backup = adapter_factory("backup", ModelRole.BACKUP, confidence=88.0)

    outcomes, score = await EnsembleAggregator().run(image, [primary, backup], backup)

    assert backup.calls == 1
    assert len(outcomes) == 2
    assert score.fallback_triggered is True


@pytest.mark.asyncio
async def test_run_uses_configured_weights(image, adapter_factory):
    primary = adapter_factory("primary", ModelRole.PRIMARY, confidence=100.0)
    backup = adapter_factory("backup", ModelRole.BACKUP, confidence=50.0)

    _, score = await EnsembleAggregator({"primary": 1.0, "backup": 1.0}).run(image, [primary, backup], backup)

    assert score.score == 75.0
