import pytest

from app.domain.cancellation_signals import CancellationSignals
from app.domain.models import GenerationStage
from app.domain.progress import RemainingTimeEstimator, clamp_reported_progress, format_remaining


@pytest.mark.unit
def test_reported_progress_is_monotonic_until_failure() -> None:
    assert clamp_reported_progress(previous=50, reported=30, stage="processing") == 50
    assert clamp_reported_progress(previous=50, reported=120, stage="processing") == 100
    assert clamp_reported_progress(previous=50, reported=60, stage=GenerationStage.FAILED) == 0


@pytest.mark.unit
@pytest.mark.parametrize(
    ("seconds", "expected"),
    [(300, "about 5 minutes"), (121, "about 3 minutes"), (90, "1-2 minutes"), (45, "about 45 seconds"), (-3, "about 0 seconds")],
)
def test_format_remaining(seconds: int, expected: str) -> None:
    assert format_remaining(seconds) == expected


@pytest.mark.unit
def test_estimator_uses_default_total_before_progress() -> None:
    estimator = RemainingTimeEstimator()

    estimator.observe(stage=GenerationStage.QUEUED, percentage=0, elapsed_seconds=10)

    assert estimator.remaining_seconds(elapsed_seconds=10) == 110
    assert estimator.calibrated is False


@pytest.mark.unit
def test_estimator_calibrates_once_past_threshold() -> None:
    estimator = RemainingTimeEstimator()

    estimator.observe(stage=GenerationStage.PROCESSING, percentage=40, elapsed_seconds=80)
    assert estimator.calibrated is True
    assert estimator.total_seconds == 200

    estimator.observe(stage=GenerationStage.PROCESSING, percentage=50, elapsed_seconds=400)
    assert estimator.total_seconds == 200
    assert estimator.remaining_seconds(elapsed_seconds=400) == 400


@pytest.mark.unit
def test_estimator_calibration_has_a_floor() -> None:
    estimator = RemainingTimeEstimator()

    estimator.observe(stage=GenerationStage.PROCESSING, percentage=50, elapsed_seconds=5)

    assert estimator.total_seconds == 60
    assert estimator.describe(elapsed_seconds=5) == "about 5 seconds"


@pytest.mark.unit
def test_estimator_ignores_regressions_and_finishes_at_zero() -> None:
    estimator = RemainingTimeEstimator()
    estimator.observe(stage=GenerationStage.EXTRACTING_RESULT, percentage=80, elapsed_seconds=40)

    assert estimator.observe(stage=GenerationStage.PROCESSING, percentage=20, elapsed_seconds=41) == 80
    estimator.observe(stage=GenerationStage.COMPLETED, percentage=100, elapsed_seconds=50)
    assert estimator.remaining_seconds(elapsed_seconds=50) == 0


@pytest.mark.unit
def test_signals_are_bounded_and_evict_oldest() -> None:
    signals = CancellationSignals(capacity=2)

    signals.notify("a")
    signals.notify("b")
    signals.notify("c")

    assert len(signals) == 2
    assert not signals.is_cancelled("a")
    assert signals.is_cancelled("b")
    assert signals.is_cancelled("c")


@pytest.mark.unit
def test_signal_refresh_and_discard() -> None:
    signals = CancellationSignals(capacity=2)
    signals.notify("a")
    signals.notify("b")
    signals.notify("a")
    signals.notify("c")

    assert signals.is_cancelled("a")
    assert not signals.is_cancelled("b")

    signals.discard("a")
    signals.discard("missing")
    assert not signals.is_cancelled("a")
