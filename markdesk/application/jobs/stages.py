"""Built-in stage executors.

Real bookmark work (scanning, dedupe, tagging, import parsing) lives outside the
engine and is plugged in the same way; these cover wiring, smoke runs and the
AI provider connection test.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from markdesk.core.jobs.executor import StageContext, StageExecutor, StageResult
from markdesk.core.jobs.stages import JOB_PLANS

logger = logging.getLogger(__name__)

StageFn = Callable[[StageContext], StageResult | Mapping[str, Any]]


class FunctionStageExecutor:
    """Adapt a plain callable to the executor protocol."""

    def __init__(
        self,
        fn: StageFn,
        *,
        can_pause: bool | None = None,
        can_cancel: bool | None = None,
    ) -> None:
        self._fn = fn
        self._can_pause = can_pause
        self._can_cancel = can_cancel

    def execute(self, context: StageContext) -> StageResult | Mapping[str, Any]:
        return self._fn(context)

    def can_pause(self) -> bool | None:
        return self._can_pause

    def can_cancel(self) -> bool | None:
        return self._can_cancel


class NoopStageExecutor:
    """Walk ``units`` units of no-op work, honouring pause/cancel between units."""

    def __init__(self, units: int = 1) -> None:
        self._units = max(1, int(units))

    def execute(self, context: StageContext) -> StageResult:
        done = int(context.processed_units or 0)
        while done < self._units:
            context.cancel_token.raise_if_cancelled()
            done += 1
            context.report_progress(done, self._units)
        return StageResult(completed=True, processed_units=done, total_units=self._units)


class ConnectionTestStageExecutor:
    """Ping the AI provider once and record the outcome in ``connection_test``.

    The stage always completes; a failed ping is a result, not a stage error.
    """

    def __init__(self, ping: Callable[[], Any]) -> None:
        self._ping = ping

    def execute(self, context: StageContext) -> StageResult:
        context.log("info", "Pinging AI provider endpoint...")
        try:
            self._ping()
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.warning("Connection test failed: %s", message, extra={"job_id": context.job_id})
            context.log("error", "Connection test failed", {"error": message})
            outcome: dict[str, Any] = {"success": False, "error": message}
        else:
            context.log("info", "Connection successful!")
            outcome = {"success": True, "error": None}
        return StageResult(
            completed=True,
            processed_units=1,
            total_units=1,
            summary={"connection_test": outcome},
        )

    def can_pause(self) -> bool:
        return False

    def can_cancel(self) -> bool:
        return True


def all_plan_stages() -> list[str]:
    seen: list[str] = []
    for plan in JOB_PLANS.values():
        for stage in plan.stage_order:
            if stage not in seen:
                seen.append(stage)
    return seen


def noop_executors(stages: Iterable[str] | None = None, *, units: int = 1) -> dict[str, StageExecutor]:
    """One NoopStageExecutor per stage (every stage of every plan by default)."""
    return {stage: NoopStageExecutor(units) for stage in (stages or all_plan_stages())}
