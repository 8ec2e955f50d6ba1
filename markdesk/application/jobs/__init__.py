"""Application-layer stage executors."""

from .stages import (
    ConnectionTestStageExecutor,
    FunctionStageExecutor,
    NoopStageExecutor,
    all_plan_stages,
    noop_executors,
)

__all__ = [
    "ConnectionTestStageExecutor",
    "FunctionStageExecutor",
    "NoopStageExecutor",
    "all_plan_stages",
    "noop_executors",
]
