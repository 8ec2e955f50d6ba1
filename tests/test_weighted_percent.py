from __future__ import annotations

from markdesk.core.jobs.models import StageUnits
from markdesk.core.jobs.stages import (
    CLEANUP_STAGE_ORDER,
    CLEANUP_STAGE_WEIGHTS,
    JOB_PLANS,
    calculate_weighted_percent,
    get_stage_descriptor,
    normalize_weights,
)

ORDER = ("a", "b", "c")
WEIGHTS = {"a": 20, "b": 50, "c": 30}


def test_previous_stages_fully_credited_plus_current_fraction() -> None:
    assert calculate_weighted_percent(ORDER, WEIGHTS, "b", StageUnits(50, 100)) == 45


def test_first_stage_with_no_units_is_zero() -> None:
    assert calculate_weighted_percent(ORDER, WEIGHTS, "a", StageUnits()) == 0


def test_unknown_total_gives_no_partial_credit() -> None:
    assert calculate_weighted_percent(ORDER, WEIGHTS, "c", StageUnits(5, None)) == 70
    assert calculate_weighted_percent(ORDER, WEIGHTS, "c", StageUnits(5, 0)) == 70


def test_fraction_is_clamped() -> None:
    assert calculate_weighted_percent(ORDER, WEIGHTS, "c", StageUnits(300, 100)) == 100
    assert calculate_weighted_percent(ORDER, WEIGHTS, "b", StageUnits(-5, 100)) == 20


def test_rounds_half_up() -> None:
    assert calculate_weighted_percent(("a", "b"), {"a": 44.5, "b": 55.5}, "b", StageUnits(0, 10)) == 45
    assert calculate_weighted_percent(("a", "b"), {"a": 42.5, "b": 57.5}, "b", StageUnits(0, 10)) == 43


def test_stage_outside_plan_is_zero() -> None:
    assert calculate_weighted_percent(ORDER, WEIGHTS, "zzz", StageUnits(1, 1)) == 0


def test_normalize_weights_scales_to_100() -> None:
    weights = normalize_weights(("x", "y"), {"x": 1, "y": 3})
    assert weights == {"x": 25.0, "y": 75.0}


def test_normalize_weights_fills_missing_and_falls_back_to_equal_shares() -> None:
    assert normalize_weights(("x", "y"), {"x": 10}) == {"x": 100.0, "y": 0.0}
    assert normalize_weights(("x", "y"), {}) == {"x": 50.0, "y": 50.0}
    assert normalize_weights((), {"x": 1}) == {}


def test_builtin_plans_sum_to_100() -> None:
    assert sum(CLEANUP_STAGE_WEIGHTS[s] for s in CLEANUP_STAGE_ORDER) == 100
    for plan in JOB_PLANS.values():
        assert sum(plan.stage_weights[s] for s in plan.stage_order) == 100


def test_unknown_stage_descriptor_is_not_retryable() -> None:
    descriptor = get_stage_descriptor("mystery")
    assert descriptor.display_name == "mystery"
    assert descriptor.retryable is False
    assert get_stage_descriptor("summarizing").can_pause is False
