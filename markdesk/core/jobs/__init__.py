"""Resumable stage-based job engine: runner, store, executor contract."""

from .executor import CancelToken, StageContext, StageExecutor, StageResult
from .job_runner import JobRunner
from .job_store import JobStore, MigrationResult, QuotaStatus, StorageStats
from .models import (
    ActivityEntry,
    ActivityLevel,
    CommandResult,
    JobCommand,
    JobSnapshot,
    JobStatus,
    QueueSummary,
    StageUnits,
)
from .stages import JOB_PLANS, STAGE_CONFIGS, StageDescriptor, calculate_weighted_percent

__all__ = [
    "JOB_PLANS",
    "STAGE_CONFIGS",
    "ActivityEntry",
    "ActivityLevel",
    "CancelToken",
    "CommandResult",
    "JobCommand",
    "JobRunner",
    "JobSnapshot",
    "JobStatus",
    "JobStore",
    "MigrationResult",
    "QueueSummary",
    "QuotaStatus",
    "StageContext",
    "StageDescriptor",
    "StageExecutor",
    "StageResult",
    "StageUnits",
    "StorageStats",
    "calculate_weighted_percent",
]
