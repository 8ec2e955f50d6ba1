from __future__ import annotations

import logging
import math
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from threading import Lock, RLock
from time import monotonic
from typing import TYPE_CHECKING, Any

from markdesk.core.errors import CommandError, StageExecutionError, ValidationError
from markdesk.core.events.job_events import (
    JobActivityEvent,
    JobQueueEvent,
    JobStatusEvent,
    StageProgressEvent,
)
from markdesk.core.jobs.executor import (
    CancelToken,
    StageContext,
    StageExecutor,
    StageResult,
    call_optional,
)
from markdesk.core.jobs.job_store import JobStore
from markdesk.core.jobs.models import (
    ACTIVE_STATUSES,
    ActivityEntry,
    ActivityLevel,
    CommandResult,
    JobCommand,
    JobSnapshot,
    JobStatus,
    QueueSummary,
    StageUnits,
    parse_iso,
    utc_now,
    utc_now_iso,
)
from markdesk.core.jobs.stages import (
    JOB_PLANS,
    JOB_TYPE_CLEANUP,
    JobPlan,
    calculate_weighted_percent,
    get_stage_descriptor,
    get_stage_display_name,
    normalize_weights,
)
from markdesk.core.settings import RunnerSettings

if TYPE_CHECKING:
    from markdesk.core.events.job_bus import JobBus

logger = logging.getLogger(__name__)

DEFAULT_ACTIVITY_LIMIT = 50
RECENT_JOBS_LIMIT = 5

RunnerListener = Callable[[JobSnapshot], None]


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


class JobRunner:
    """Single-slot, stage-based job state machine.

    Commands and every snapshot mutation are serialized by one re-entrant
    lock. Stage executors run on a single worker thread, outside the lock,
    each invocation with its own CancelToken. A pause or cancel cancels the
    token; whatever the stale invocation reports afterwards is discarded.
    """

    def __init__(
        self,
        bus: JobBus,
        store: JobStore,
        settings: RunnerSettings | None = None,
        *,
        plans: Mapping[str, JobPlan] = JOB_PLANS,
    ) -> None:
        self._bus = bus
        self._store = store
        self._settings = settings or RunnerSettings()
        self._plans = plans
        self._lock = RLock()
        self._job: JobSnapshot | None = None
        self._token: CancelToken | None = None
        self._executors: dict[str, StageExecutor] = {}
        self._retry_counts: dict[str, int] = {}
        self._listeners: list[RunnerListener] = []
        self._futures: set[Future[None]] = set()
        self._futures_lock = Lock()
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="job-stage")

    @property
    def settings(self) -> RunnerSettings:
        return self._settings

    # --------------------------------------------------------------- registry

    def register_stage_executor(self, stage: str, executor: StageExecutor) -> None:
        if not callable(getattr(executor, "execute", None)):
            raise TypeError(f"Stage executor for {stage!r} has no execute()")
        with self._lock:
            if stage in self._executors:
                logger.warning("Stage executor for %s is already registered; overwriting", stage)
            self._executors[stage] = executor

    def get_stage_executor(self, stage: str) -> StageExecutor | None:
        return self._executors.get(stage)

    # -------------------------------------------------------------- listeners

    def subscribe(self, listener: RunnerListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def _notify_listeners(self, job: JobSnapshot) -> None:
        for listener in list(self._listeners):
            try:
                listener(job.copy())
            except Exception:
                logger.exception("Job runner listener failed", extra={"job_id": job.job_id})

    # ----------------------------------------------------------------- status

    def get_current_job(self) -> JobSnapshot | None:
        with self._lock:
            return None if self._job is None else self._job.copy()

    def retry_count(self, stage: str) -> int:
        with self._lock:
            return self._retry_counts.get(stage, 0)

    def _persist(self, *, immediate: bool = False) -> None:
        if self._job is None:
            return
        try:
            self._store.save_snapshot(self._job, immediate=immediate)
        except ValidationError:
            logger.exception("Refusing to persist malformed snapshot", extra={"job_id": self._job.job_id})

    def publish_status(self) -> None:
        job = self._job
        if job is None:
            return
        self._bus.publish(JobStatusEvent(job=job.to_dict()))
        self._notify_listeners(job)

    def publish_queue(self) -> QueueSummary:
        job = self._job
        active = job is not None and not job.status.is_terminal
        status = job.status if active and job is not None else None
        recent = [
            {
                "job_id": entry.get("job_id"),
                "job_type": (entry.get("queue_meta") or {}).get("job_type"),
                "status": entry.get("status"),
                "weighted_percent": entry.get("weighted_percent"),
                "completed_at": entry.get("completed_at"),
            }
            for entry in self._store.get_history()[-RECENT_JOBS_LIMIT:]
        ]
        summary = QueueSummary(
            total=1 if active else 0,
            pending=1 if status is JobStatus.QUEUED else 0,
            running=1 if status in (JobStatus.RUNNING, JobStatus.CANCELLING) else 0,
            paused=1 if status is JobStatus.PAUSED else 0,
            recent_jobs=recent,
        )
        try:
            self._store.save_queue(summary)
        except ValidationError:
            logger.exception("Refusing to persist malformed queue summary")
        self._bus.publish(JobQueueEvent(queue=summary.to_dict()))
        return summary

    def add_activity(
        self, level: ActivityLevel | str, message: str, context: Mapping[str, Any] | None = None
    ) -> ActivityEntry | None:
        with self._lock:
            job = self._job
            if job is None:
                return None
            try:
                lvl = ActivityLevel(level)
            except ValueError:
                logger.warning("Dropping activity with unknown level %r: %s", level, message)
                return None
            entry = ActivityEntry(
                job_id=job.job_id,
                timestamp=utc_now_iso(),
                level=lvl,
                message=str(message),
                stage=job.stage,
                context=dict(context) if context else None,
            )
            self._store.append_activity(entry)
            self._bus.publish(JobActivityEvent(activity=entry.to_dict()))
            job.activity = entry.message
            return entry

    # ---------------------------------------------------------------- commands

    def handle_command(self, command: JobCommand | str, payload: Mapping[str, Any] | None = None) -> CommandResult:
        """Run one command to completion. Never raises; failures come back as results."""
        data = dict(payload or {})
        try:
            cmd = JobCommand(command)
        except ValueError:
            logger.warning("Unknown command: %s", command, extra={"command": str(command)})
            return CommandResult.fail(f"Unknown command: {command}")

        with self._lock:
            try:
                if cmd is JobCommand.START_JOB:
                    job_type, meta = _split_start_payload(data)
                    return CommandResult.ok(job_id=self.start(job_type, meta))
                if cmd is JobCommand.PAUSE_JOB:
                    return CommandResult.ok(job_id=self.pause_job().job_id)
                if cmd is JobCommand.RESUME_JOB:
                    return CommandResult.ok(job_id=self.resume_job().job_id)
                if cmd is JobCommand.CANCEL_JOB:
                    return CommandResult.ok(job_id=self.cancel_job().job_id)
                if cmd is JobCommand.GET_JOB_STATUS:
                    snapshot = self.get_current_job() or self._store.load_snapshot()
                    return CommandResult.status(None if snapshot is None else snapshot.to_dict())
                limit = data.get("limit")
                # Missing, non-numeric or non-positive limits fall back to the default.
                if not _is_number(limit) or limit < 1:
                    limit = DEFAULT_ACTIVITY_LIMIT
                entries = self._store.load_activity(int(limit))
                return CommandResult.ok(activity=[e.to_dict() for e in entries])
            except CommandError as exc:
                logger.info("Command %s rejected: %s", cmd.value, exc.message, extra={"command": cmd.value})
                return CommandResult.fail(exc.message)
            except Exception as exc:
                logger.exception("Command %s failed", cmd.value, extra={"command": cmd.value})
                self.add_activity(ActivityLevel.ERROR, f"Command failed: {cmd.value}", {"error": str(exc)})
                return CommandResult.fail(str(exc) or type(exc).__name__)

    def start(self, job_type: str = JOB_TYPE_CLEANUP, request_meta: Mapping[str, Any] | None = None) -> str:
        """Queue a job and begin executing it. Returns the job id."""
        with self._lock:
            plan = self._plans.get(job_type)
            if plan is None:
                raise CommandError(f"Unknown job type: {job_type}")
            current = self._job
            if current is not None and current.status in ACTIVE_STATUSES:
                raise CommandError(f"Job {current.job_id} is already {current.status.value}")

            meta = dict(request_meta or {})
            now = utc_now_iso()
            existing = current if current is not None and not current.status.is_terminal else None
            if existing is None:
                existing = self._store.load_snapshot()

            resume_units = False
            if existing is not None and existing.status is JobStatus.PAUSED and existing.job_type == job_type:
                job = self._rehydrate(existing, plan, meta, now)
                resume_units = True
            else:
                if existing is not None and existing.status is JobStatus.PAUSED:
                    logger.info(
                        "Archiving paused %s job %s to start %s",
                        existing.job_type,
                        existing.job_id,
                        job_type,
                        extra={"job_id": existing.job_id},
                    )
                    self._store.add_to_history(existing)
                job = self._create(plan, meta, now)

            if self._token is not None:
                self._token.cancel()
                self._token = None
            self._job = job
            self._retry_counts.clear()

            self._persist(immediate=True)
            self.publish_status()
            self.add_activity(ActivityLevel.INFO, "Job queued", {"job_id": job.job_id})
            self.publish_queue()
            logger.info("Job %s queued", job.job_id, extra={"event": "job_queued", "job_id": job.job_id})

            self.execute_next(resume_units=resume_units)
            return job.job_id

    def _create(self, plan: JobPlan, meta: dict[str, Any], now: str) -> JobSnapshot:
        order = list(plan.stage_order)
        queue_meta = dict(meta)
        queue_meta["requested_by"] = meta.get("requested_by") or "manual"
        queue_meta["requested_at"] = now
        queue_meta["schedule"] = meta.get("schedule")
        queue_meta["job_type"] = plan.job_type
        return JobSnapshot(
            job_id=f"job_{uuid.uuid4().hex}",
            status=JobStatus.QUEUED,
            stage=order[0],
            stage_index=0,
            activity="Job queued",
            timestamp=now,
            created_at=now,
            queue_meta=queue_meta,
            stage_order=order,
            stage_weights=normalize_weights(order, plan.stage_weights),
        )

    def _rehydrate(self, existing: JobSnapshot, plan: JobPlan, meta: dict[str, Any], now: str) -> JobSnapshot:
        job = existing.copy()
        previous = existing.queue_meta
        queue_meta = {**previous, **meta}
        queue_meta["requested_by"] = meta.get("requested_by") or previous.get("requested_by") or "manual"
        queue_meta["requested_at"] = now
        queue_meta["schedule"] = meta["schedule"] if "schedule" in meta else previous.get("schedule")
        queue_meta["job_type"] = plan.job_type

        if not job.stage_order:
            job.stage_order = list(plan.stage_order)
        job.stage_weights = normalize_weights(job.stage_order, job.stage_weights or plan.stage_weights)
        if job.stage_index < len(job.stage_order):
            job.stage = job.stage_order[job.stage_index]
        job.status = JobStatus.QUEUED
        job.error = None
        job.activity = "Job resumed"
        job.timestamp = now
        job.queue_meta = queue_meta
        return job

    def pause_job(self) -> JobSnapshot:
        with self._lock:
            job = self._job
            if job is None or job.status not in (JobStatus.RUNNING, JobStatus.QUEUED):
                raise CommandError("No running job to pause")
            if job.status is JobStatus.RUNNING and not self._stage_allows("can_pause", job.stage):
                raise CommandError(f"{get_stage_display_name(job.stage)} stage cannot be paused")

            job.status = JobStatus.PAUSED
            job.activity = "Job paused"
            job.timestamp = utc_now_iso()
            self._release_token()

            # A user pause must survive a crash: bypass the debounce.
            self._persist(immediate=True)
            self.publish_status()
            self.add_activity(ActivityLevel.INFO, "Job paused by user")
            self.publish_queue()
            logger.info("Job %s paused", job.job_id, extra={"event": "job_paused", "job_id": job.job_id})
            return job.copy()

    def resume_job(self) -> JobSnapshot:
        with self._lock:
            job = self._job
            if job is None or job.status is not JobStatus.PAUSED:
                raise CommandError("No paused job to resume")

            job.status = JobStatus.RUNNING
            job.error = None
            job.activity = "Job resumed"
            job.timestamp = utc_now_iso()
            token = CancelToken()
            self._token = token

            self._persist(immediate=True)
            self.publish_status()
            self.add_activity(ActivityLevel.INFO, "Job resumed")
            self.publish_queue()
            logger.info("Job %s resumed", job.job_id, extra={"event": "job_resumed", "job_id": job.job_id})
            self._submit(token)
            return job.copy()

    def cancel_job(self) -> JobSnapshot:
        with self._lock:
            job = self._job
            if job is None or job.status.is_terminal:
                raise CommandError("No active job to cancel")
            if job.status is JobStatus.RUNNING and not self._stage_allows("can_cancel", job.stage):
                self.add_activity(
                    ActivityLevel.WARN,
                    f"{get_stage_display_name(job.stage)} stage does not support cancellation; stopping anyway",
                )

            job.status = JobStatus.CANCELLING
            job.activity = "Cancelling job..."
            job.timestamp = utc_now_iso()
            self._persist(immediate=True)
            self.publish_status()
            self.add_activity(ActivityLevel.WARN, "Job cancelled by user")
            self._release_token()

            self.finalize_job(JobStatus.CANCELLED)
            return job.copy()

    def _stage_allows(self, capability: str, stage: str) -> bool:
        answer = call_optional(self._executors.get(stage), capability, None)
        if answer is not None:
            return bool(answer)
        return bool(getattr(get_stage_descriptor(stage), capability))

    def _release_token(self) -> None:
        if self._token is not None:
            self._token.cancel()
            self._token = None

    # -------------------------------------------------------------- execution

    def _is_live(self, token: CancelToken) -> bool:
        job = self._job
        return (
            job is not None
            and token is self._token
            and not token.is_cancelled()
            and job.status is JobStatus.RUNNING
        )

    def _submit(self, token: CancelToken) -> None:
        future = self._pool.submit(self._run_stage, token)
        with self._futures_lock:
            self._futures.add(future)
        future.add_done_callback(self._forget_future)

    def _forget_future(self, future: Future[None]) -> None:
        with self._futures_lock:
            self._futures.discard(future)

    def execute_next(self, *, resume_units: bool = False) -> None:
        """Start the stage at ``stage_index`` or finalize when the plan is exhausted."""
        with self._lock:
            job = self._job
            if job is None or job.status not in (JobStatus.QUEUED, JobStatus.RUNNING):
                return
            if job.stage_index >= len(job.stage_order):
                self.finalize_job(JobStatus.COMPLETED)
                return

            stage = job.stage_order[job.stage_index]
            job.stage = stage
            job.status = JobStatus.RUNNING
            if not resume_units:
                job.stage_units = StageUnits()
            job.indeterminate = not job.stage_units.total
            job.activity = f"Starting {get_stage_display_name(stage)} stage"
            job.timestamp = utc_now_iso()
            token = CancelToken()
            self._token = token

            self._persist()
            self.publish_status()
            self._submit(token)

    def _run_stage(self, token: CancelToken) -> None:
        try:
            with self._lock:
                if not self._is_live(token):
                    return
                job = self._job
                if job is not None and job.stage_index >= len(job.stage_order):
                    self.finalize_job(JobStatus.COMPLETED)
                    return
            self.execute_current_stage(token)
        except Exception as exc:
            logger.exception("Job execution failed")
            self.add_activity(ActivityLevel.ERROR, "Job execution failed", {"error": str(exc)})

    def execute_current_stage(self, token: CancelToken) -> None:
        """Run the current stage on *token*, retrying per policy. Called on the stage worker."""
        while True:
            delay = self._attempt_stage(token)
            if delay is None:
                return
            if token.wait(delay):
                return

    def _attempt_stage(self, token: CancelToken) -> float | None:
        with self._lock:
            if not self._is_live(token) or self._job is None:
                return None
            job = self._job
            stage = job.stage
            display = get_stage_display_name(stage)
            executor = self._executors.get(stage)
            if executor is None:
                self.add_activity(ActivityLevel.ERROR, f"No executor registered for stage: {stage}")
                return self.handle_stage_error(stage, StageExecutionError(f"No executor found for stage: {stage}"))

            self.add_activity(ActivityLevel.INFO, f"Starting {display} stage")
            if job.started_at is None:
                job.started_at = utc_now_iso()
            context = StageContext(
                job_id=job.job_id,
                stage=stage,
                processed_units=job.stage_units.processed,
                total_units=job.stage_units.total,
                cancel_token=token,
                progress_callback=lambda processed, total=None: self._on_progress(token, processed, total),
                activity_callback=lambda level, message, ctx=None: self._on_activity(token, level, message, ctx),
            )

        error: Exception | None = None
        result: StageResult | None = None
        try:
            call_optional(executor, "prepare")
            try:
                result = StageResult.coerce(executor.execute(context))
            finally:
                call_optional(executor, "teardown")
        except Exception as exc:
            error = exc

        with self._lock:
            if not self._is_live(token):
                logger.debug("Discarding result of stale %s invocation", stage, extra={"stage": stage})
                return None
            if error is not None:
                self.add_activity(ActivityLevel.ERROR, f"Error in {display} stage", {"error": str(error)})
                return self.handle_stage_error(stage, error)
            if result is not None and result.completed:
                self.add_activity(ActivityLevel.INFO, f"Completed {display} stage")
                self.complete_stage(result)
                return None
            message = (result.error if result is not None else None) or "Stage execution incomplete"
            return self.handle_stage_error(stage, StageExecutionError(message))

    def _on_progress(self, token: CancelToken, processed: Any, total: Any = None) -> None:
        with self._lock:
            if self._is_live(token):
                self.update_stage_progress(processed, total)

    def _on_activity(self, token: CancelToken, level: Any, message: Any, context: Any = None) -> None:
        with self._lock:
            if self._is_live(token):
                self.add_activity(level, str(message), context if isinstance(context, Mapping) else None)

    def handle_stage_error(self, stage: str, error: BaseException | str) -> float | None:
        """Apply the retry policy. Returns the backoff delay when the stage should run again."""
        with self._lock:
            job = self._job
            if job is None:
                return None
            descriptor = get_stage_descriptor(stage)
            retries = self._retry_counts.get(stage, 0)
            max_retries = self._settings.max_retries

            if descriptor.retryable and retries < max_retries:
                attempt = retries + 1
                self._retry_counts[stage] = attempt
                self.add_activity(
                    ActivityLevel.WARN,
                    f"Retrying {descriptor.display_name} stage ({attempt}/{max_retries})",
                    {"error": str(error)},
                )
                logger.warning(
                    "Retrying stage %s (%d/%d): %s",
                    stage,
                    attempt,
                    max_retries,
                    error,
                    extra={"event": "stage_retry", "job_id": job.job_id, "stage": stage},
                )
                return self._settings.retry_delay_sec * attempt

            message = str(error) or "Unknown error"
            status = JobStatus.PAUSED if self._settings.auto_pause_on_error else JobStatus.FAILED
            job.status = status
            job.error = message
            job.activity = f"Stage failed: {descriptor.display_name}"
            job.timestamp = utc_now_iso()
            self._release_token()
            self._retry_counts.pop(stage, None)
            logger.error(
                "Stage %s failed permanently: %s",
                stage,
                message,
                extra={"event": "stage_failed", "job_id": job.job_id, "stage": stage},
            )

            if status is JobStatus.FAILED:
                self.add_activity(
                    ActivityLevel.ERROR,
                    f"{descriptor.display_name} stage failed permanently",
                    {"error": message, "retries": retries},
                )
                self.finalize_job(JobStatus.FAILED)
                return None

            self._persist(immediate=True)
            self.publish_status()
            self.add_activity(
                ActivityLevel.ERROR,
                f"{descriptor.display_name} stage failed permanently",
                {"error": message, "retries": retries},
            )
            self.publish_queue()
            return None

    def update_stage_progress(self, processed: Any, total: Any = None) -> None:
        with self._lock:
            job = self._job
            if job is None or job.status is not JobStatus.RUNNING:
                return
            units = StageUnits(
                processed=processed if _is_number(processed) else 0,
                total=total if _is_number(total) else None,
            )
            percent = calculate_weighted_percent(job.stage_order, job.stage_weights, job.stage, units)
            job.stage_units = units
            job.weighted_percent = max(job.weighted_percent, percent)
            job.indeterminate = not units.total
            job.timestamp = utc_now_iso()

            self._persist()
            self._bus.publish(
                StageProgressEvent(stage=job.stage, processed=units.processed, total=units.total, job=job.to_dict())
            )

    def complete_stage(self, result: StageResult) -> None:
        with self._lock:
            job = self._job
            if job is None:
                return
            job.stage_units = StageUnits(
                processed=result.processed_units if result.processed_units is not None else job.stage_units.processed,
                total=result.total_units if result.total_units is not None else job.stage_units.total,
            )
            # Finishing a stage credits its whole weight, whatever units it reported.
            credited = calculate_weighted_percent(
                job.stage_order, job.stage_weights, job.stage, StageUnits(processed=1, total=1)
            )
            job.weighted_percent = max(job.weighted_percent, credited)
            if result.summary:
                job.summary = {**job.summary, **result.summary}
            self._retry_counts.pop(job.stage, None)
            job.timestamp = utc_now_iso()

            self._persist()
            self.publish_status()

            job.stage_index += 1
            self.execute_next()

    def finalize_job(self, status: JobStatus) -> None:
        with self._lock:
            job = self._job
            if job is None:
                return
            now = utc_now()
            now_iso = now.isoformat(timespec="milliseconds")
            started_value = job.started_at or job.created_at or now_iso
            started = parse_iso(started_value)
            runtime_ms = 0 if started is None else max(0, int((now - started).total_seconds() * 1000))

            job.status = status
            job.activity = f"Job {status.value}"
            job.timestamp = now_iso
            if status is JobStatus.COMPLETED:
                job.completed_at = now_iso
                job.weighted_percent = 100
            job.indeterminate = False
            job.summary = {
                **job.summary,
                "runtime_ms": runtime_ms,
                "started_at": started_value,
                "completed_at": job.completed_at,
            }
            self._release_token()

            self._persist(immediate=True)
            self.publish_status()
            level = {
                JobStatus.COMPLETED: ActivityLevel.INFO,
                JobStatus.CANCELLED: ActivityLevel.WARN,
            }.get(status, ActivityLevel.ERROR)
            self.add_activity(level, f"Job {status.value}", {"runtime_ms": runtime_ms})

            self._store.add_to_history(job)
            self._store.clear_snapshot()
            self._retry_counts.clear()
            self.publish_queue()
            logger.info(
                "Job %s %s after %d ms",
                job.job_id,
                status.value,
                runtime_ms,
                extra={"event": "job_finished", "job_id": job.job_id, "status": status.value},
            )

    # -------------------------------------------------------------- lifecycle

    def initialize(self) -> JobSnapshot | None:
        """Adopt the durable snapshot after a restart.

        A job that was running or queued when the process died comes back
        paused; a job caught mid-cancel is finalized as cancelled.
        """
        with self._lock:
            snapshot = self._store.load_snapshot()
            if snapshot is None:
                return None
            self._job = snapshot
            if snapshot.status in (JobStatus.RUNNING, JobStatus.QUEUED):
                snapshot.status = JobStatus.PAUSED
                snapshot.activity = "Job paused due to restart"
                snapshot.timestamp = utc_now_iso()
                self._persist(immediate=True)
                self.add_activity(ActivityLevel.WARN, "Job paused due to restart")
                logger.warning(
                    "Job %s was interrupted; paused", snapshot.job_id, extra={"job_id": snapshot.job_id}
                )
            elif snapshot.status is JobStatus.CANCELLING:
                self.finalize_job(JobStatus.CANCELLED)
            elif snapshot.status.is_terminal:
                self._store.add_to_history(snapshot)
                self._store.clear_snapshot()
            return self.get_current_job()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no stage work is queued or running. Do not call while holding the runner lock."""
        deadline = None if timeout is None else monotonic() + timeout
        while True:
            with self._futures_lock:
                pending = {f for f in self._futures if not f.done()}
            if not pending:
                return True
            remaining = None if deadline is None else deadline - monotonic()
            if remaining is not None and remaining <= 0:
                return False
            wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)

    def dispose(self) -> None:
        with self._lock:
            self._release_token()
            self._listeners.clear()
            self._retry_counts.clear()
        self._pool.shutdown(wait=False, cancel_futures=True)


def _split_start_payload(payload: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
    """``START_JOB`` accepts either ``{"queue_meta": {...}}`` or the request keys inline."""
    nested = payload.get("queue_meta")
    meta = dict(nested) if isinstance(nested, Mapping) else {k: v for k, v in payload.items() if k != "job_type"}
    job_type = payload.get("job_type") or meta.pop("job_type", None) or JOB_TYPE_CLEANUP
    return str(job_type), meta
