"""Composition root / DI container.

Callers (CLI, UI surfaces, tests) should not build store, bus and runner by
hand. This container lives in the application layer and wires up concrete
implementations on first use.
"""

from __future__ import annotations

from pathlib import Path

from markdesk.application.job_system import JobSystem
from markdesk.config import SETTINGS_FILE_NAME, STORE_DIR_NAME
from markdesk.core.events.job_bus import JobBus
from markdesk.core.jobs.job_runner import JobRunner
from markdesk.core.jobs.job_store import JobStore
from markdesk.core.paths import get_app_state_dir
from markdesk.core.settings import JobSystemSettings, load_settings
from markdesk.core.storage import DurableStore, JsonFileDurableStore


class Container:
    """Resolves engine services. Single place to swap implementations if needed."""

    def __init__(
        self,
        *,
        settings: JobSystemSettings | None = None,
        settings_path: Path | None = None,
        state_dir: Path | None = None,
        durable: DurableStore | None = None,
    ) -> None:
        self._settings = settings
        self._settings_path = settings_path
        self._state_dir = state_dir
        self._durable = durable
        self._job_store: JobStore | None = None
        self._job_bus: JobBus | None = None
        self._job_runner: JobRunner | None = None
        self._job_system: JobSystem | None = None

    @property
    def state_dir(self) -> Path:
        if self._state_dir is None:
            configured = self._settings.state_dir if self._settings is not None else None
            self._state_dir = Path(configured).expanduser() if configured else get_app_state_dir()
            self._state_dir.mkdir(parents=True, exist_ok=True)
        return self._state_dir

    @property
    def settings(self) -> JobSystemSettings:
        if self._settings is None:
            path = self._settings_path
            if path is None and self._state_dir is not None:
                path = self._state_dir / SETTINGS_FILE_NAME
            if path is None:
                path = get_app_state_dir() / SETTINGS_FILE_NAME
            self._settings = load_settings(path)
        return self._settings

    @property
    def durable(self) -> DurableStore:
        if self._durable is None:
            self._durable = JsonFileDurableStore(self.state_dir / STORE_DIR_NAME)
        return self._durable

    @property
    def job_store(self) -> JobStore:
        if self._job_store is None:
            self._job_store = JobStore(self.durable, self.settings.store)
        return self._job_store

    @property
    def job_bus(self) -> JobBus:
        if self._job_bus is None:
            self._job_bus = JobBus(self.job_store, self.settings.bus)
        return self._job_bus

    @property
    def job_runner(self) -> JobRunner:
        if self._job_runner is None:
            self._job_runner = JobRunner(self.job_bus, self.job_store, self.settings.runner)
        return self._job_runner

    @property
    def job_system(self) -> JobSystem:
        if self._job_system is None:
            self._job_system = JobSystem(self.job_store, self.job_bus, self.job_runner)
        return self._job_system

    def dispose(self) -> None:
        if self._job_system is not None:
            self._job_system.dispose()
