"""Composition root for the job engine.

Wires runner, bus and store together and exposes the command surface to UI
surfaces and schedulers. Commands that arrive over a channel are answered on
that same channel with a ``jobCommandResult`` message.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from markdesk.core.events.channels import Channel
from markdesk.core.events.job_bus import JobBus, Subscription
from markdesk.core.events.job_events import JobBusEvent, JobCommandEvent, JobCommandResultEvent
from markdesk.core.jobs.executor import StageExecutor
from markdesk.core.jobs.job_runner import DEFAULT_ACTIVITY_LIMIT, JobRunner
from markdesk.core.jobs.job_store import JobStore
from markdesk.core.jobs.models import CommandResult, JobCommand, JobSnapshot
from markdesk.core.jobs.stages import JOB_TYPE_CLEANUP
from markdesk.core.settings import JobSystemSettings
from markdesk.core.storage.base import DurableStore

logger = logging.getLogger(__name__)

SUBSCRIBER_NAME = "job-system"


class JobSystem:
    def __init__(self, store: JobStore, bus: JobBus, runner: JobRunner) -> None:
        self.store = store
        self.bus = bus
        self.runner = runner
        self._initialized = False
        self._subscription: Subscription | None = None

    @classmethod
    def create(cls, durable: DurableStore, settings: JobSystemSettings | None = None) -> JobSystem:
        settings = settings or JobSystemSettings()
        store = JobStore(durable, settings.store)
        bus = JobBus(store, settings.bus)
        runner = JobRunner(bus, store, settings.runner)
        return cls(store, bus, runner)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Migrate legacy data, recover the runner and announce the current state."""
        if self._initialized:
            logger.warning("Job system already initialized")
            return

        migration = self.store.migrate_from_legacy()
        if migration.migrated:
            logger.info("Migrated legacy job data: %s", ", ".join(migration.migrated_keys))
        elif migration.error:
            logger.warning("Legacy migration skipped: %s", migration.error)

        self.bus.restore_last_event()
        job = self.runner.initialize()
        self._subscription = self.bus.subscribe(SUBSCRIBER_NAME, self._on_bus_event)
        if job is not None and not job.status.is_terminal:
            self.runner.publish_status()

        self.store.check_quota_warning()
        self.bus.start_heartbeat()
        self._initialized = True
        logger.info("Job system initialized", extra={"event": "job_system_ready"})

    # --------------------------------------------------------------- commands

    def handle_command(self, command: JobCommand | str, payload: Mapping[str, Any] | None = None) -> CommandResult:
        if not self._initialized:
            return CommandResult.fail("Job system not initialized")
        return self.runner.handle_command(command, payload)

    def start_job(self, job_type: str = JOB_TYPE_CLEANUP, **request_meta: Any) -> CommandResult:
        return self.handle_command(JobCommand.START_JOB, {"job_type": job_type, **request_meta})

    def pause_job(self) -> CommandResult:
        return self.handle_command(JobCommand.PAUSE_JOB)

    def resume_job(self) -> CommandResult:
        return self.handle_command(JobCommand.RESUME_JOB)

    def cancel_job(self) -> CommandResult:
        return self.handle_command(JobCommand.CANCEL_JOB)

    def get_job_status(self) -> CommandResult:
        return self.handle_command(JobCommand.GET_JOB_STATUS)

    def get_activity_log(self, limit: int = DEFAULT_ACTIVITY_LIMIT) -> CommandResult:
        return self.handle_command(JobCommand.GET_ACTIVITY_LOG, {"limit": limit})

    def get_current_job(self) -> JobSnapshot | None:
        return self.runner.get_current_job()

    def _on_bus_event(self, event: JobBusEvent) -> None:
        if not isinstance(event, JobCommandEvent) or event.port_name is None:
            return
        result = self.handle_command(event.command, event.payload)
        delivered = self.bus.send_to_channel(
            event.port_name, JobCommandResultEvent(command=event.command, result=result.to_dict())
        )
        if not delivered:
            logger.info(
                "Channel %s left before the %s result was ready",
                event.port_name,
                event.command,
                extra={"channel": event.port_name, "command": event.command},
            )

    # ---------------------------------------------------------------- wiring

    def connect_channel(self, channel: Channel) -> bool:
        return self.bus.register_channel(channel)

    def register_stage_executor(self, stage: str, executor: StageExecutor) -> None:
        self.runner.register_stage_executor(stage, executor)

    def wait_idle(self, timeout: float | None = None) -> bool:
        return self.runner.wait_idle(timeout)

    def get_stats(self) -> dict[str, Any]:
        job = self.runner.get_current_job()
        quota = self.store.check_quota_warning()
        return {
            "bus": self.bus.get_stats(),
            "storage": self.store.get_storage_stats().to_dict(),
            "quota": {"warning": quota.warning, "usage": quota.usage, "quota": quota.quota},
            "current_job": None if job is None else {"job_id": job.job_id, "status": job.status.value},
        }

    def dispose(self) -> None:
        if not self._initialized:
            return
        logger.info("Disposing job system")
        if self._subscription is not None:
            self.bus.unsubscribe(self._subscription)
            self._subscription = None
        self.runner.dispose()
        self.bus.dispose()
        self.store.close()
        self._initialized = False
