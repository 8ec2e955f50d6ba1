"""Stage descriptors, job plans and weighted progress.

A job plan is the ordered list of stage ids plus their weights. Plans are
captured on the snapshot when a job is created so a job keeps a consistent plan
even if the defaults below change later.
"""

from __future__ import annotations

import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from types import MappingProxyType

from markdesk.core.jobs.models import StageUnits

INITIALIZING = "initializing"
SCANNING = "scanning"
GROUPING = "grouping"
RESOLVING = "resolving"
VERIFYING = "verifying"
SUMMARIZING = "summarizing"
TESTING_CONNECTION = "testingConnection"

CLEANUP_STAGE_ORDER: tuple[str, ...] = (
    INITIALIZING,
    SCANNING,
    GROUPING,
    RESOLVING,
    VERIFYING,
    SUMMARIZING,
)
TEST_CONNECTION_STAGE_ORDER: tuple[str, ...] = (INITIALIZING, TESTING_CONNECTION, SUMMARIZING)

CLEANUP_STAGE_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {
        INITIALIZING: 5,
        SCANNING: 30,
        GROUPING: 10,
        RESOLVING: 40,
        VERIFYING: 10,
        SUMMARIZING: 5,
    }
)
TEST_CONNECTION_STAGE_WEIGHTS: Mapping[str, float] = MappingProxyType(
    {INITIALIZING: 20, TESTING_CONNECTION: 60, SUMMARIZING: 20}
)

WEIGHT_TOTAL = 100.0


@dataclass(frozen=True, slots=True)
class StageDescriptor:
    id: str
    display_name: str
    description: str
    weight: float
    can_pause: bool = True
    can_cancel: bool = True
    retryable: bool = True
    estimated_units: int = 1


STAGE_CONFIGS: Mapping[str, StageDescriptor] = MappingProxyType(
    {
        INITIALIZING: StageDescriptor(
            INITIALIZING,
            "Initializing",
            "Preparing the job environment and loading stored state",
            CLEANUP_STAGE_WEIGHTS[INITIALIZING],
        ),
        SCANNING: StageDescriptor(
            SCANNING,
            "Scanning",
            "Reading bookmark metadata and building working sets",
            CLEANUP_STAGE_WEIGHTS[SCANNING],
            estimated_units=100,
        ),
        GROUPING: StageDescriptor(
            GROUPING,
            "Grouping",
            "Clustering potential duplicates by similarity",
            CLEANUP_STAGE_WEIGHTS[GROUPING],
            estimated_units=10,
        ),
        RESOLVING: StageDescriptor(
            RESOLVING,
            "Resolving",
            "Applying dedupe and conflict resolution strategies",
            CLEANUP_STAGE_WEIGHTS[RESOLVING],
            estimated_units=50,
        ),
        VERIFYING: StageDescriptor(
            VERIFYING,
            "Verifying",
            "Double-checking bookmark integrity and sync alignment",
            CLEANUP_STAGE_WEIGHTS[VERIFYING],
            estimated_units=25,
        ),
        SUMMARIZING: StageDescriptor(
            SUMMARIZING,
            "Summarizing",
            "Generating completion summary and persisting results",
            CLEANUP_STAGE_WEIGHTS[SUMMARIZING],
            can_pause=False,
            retryable=False,
        ),
        TESTING_CONNECTION: StageDescriptor(
            TESTING_CONNECTION,
            "Testing Connection",
            "Pinging the AI provider endpoint to verify credentials",
            TEST_CONNECTION_STAGE_WEIGHTS[TESTING_CONNECTION],
            can_pause=False,
            retryable=False,
        ),
    }
)


@dataclass(frozen=True, slots=True)
class JobPlan:
    job_type: str
    stage_order: tuple[str, ...]
    stage_weights: Mapping[str, float]


JOB_TYPE_CLEANUP = "cleanup"
JOB_TYPE_IMPORT = "import"
JOB_TYPE_TEST_CONNECTION = "test-connection"

JOB_PLANS: Mapping[str, JobPlan] = MappingProxyType(
    {
        JOB_TYPE_CLEANUP: JobPlan(JOB_TYPE_CLEANUP, CLEANUP_STAGE_ORDER, CLEANUP_STAGE_WEIGHTS),
        JOB_TYPE_IMPORT: JobPlan(JOB_TYPE_IMPORT, CLEANUP_STAGE_ORDER, CLEANUP_STAGE_WEIGHTS),
        JOB_TYPE_TEST_CONNECTION: JobPlan(
            JOB_TYPE_TEST_CONNECTION, TEST_CONNECTION_STAGE_ORDER, TEST_CONNECTION_STAGE_WEIGHTS
        ),
    }
)


def get_stage_descriptor(stage: str) -> StageDescriptor:
    """Descriptor for *stage*; unknown stages get a non-retryable placeholder."""
    known = STAGE_CONFIGS.get(stage)
    if known is not None:
        return known
    return StageDescriptor(stage, stage, "", 0.0, retryable=False)


def get_stage_display_name(stage: str) -> str:
    return get_stage_descriptor(stage).display_name


def normalize_weights(
    stage_order: Sequence[str], weights: Mapping[str, float] | None
) -> dict[str, float]:
    """Return weights for every stage in *stage_order*, scaled to sum to 100.

    Missing or negative weights count as 0. If nothing is left, stages share
    the total equally.
    """
    if not stage_order:
        return {}
    raw = {stage: max(0.0, float((weights or {}).get(stage, 0) or 0)) for stage in stage_order}
    total = sum(raw.values())
    if total <= 0:
        share = WEIGHT_TOTAL / len(stage_order)
        return {stage: share for stage in stage_order}
    if abs(total - WEIGHT_TOTAL) < 1e-9:
        return raw
    return {stage: value * WEIGHT_TOTAL / total for stage, value in raw.items()}


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def calculate_weighted_percent(
    stage_order: Sequence[str],
    stage_weights: Mapping[str, float],
    stage: str,
    stage_units: StageUnits | None,
) -> int:
    """Overall progress 0..100.

    Stages before *stage* are fully credited; *stage* contributes its weight
    times processed/total when total > 0, otherwise nothing.
    """
    try:
        current_index = list(stage_order).index(stage)
    except ValueError:
        return 0

    total_weight = sum(float(stage_weights.get(s, 0) or 0) for s in stage_order) or WEIGHT_TOTAL
    completed = sum(float(stage_weights.get(s, 0) or 0) for s in stage_order[:current_index])

    stage_progress = 0.0
    if stage_units is not None and stage_units.total is not None and stage_units.total > 0:
        fraction = _clamp(stage_units.processed / stage_units.total, 0.0, 1.0)
        stage_progress = fraction * float(stage_weights.get(stage, 0) or 0)

    percent = _clamp((completed + stage_progress) / total_weight * 100.0, 0.0, 100.0)
    # Half-up, not banker's rounding: 44.5 shows as 45.
    return int(math.floor(percent + 0.5))
