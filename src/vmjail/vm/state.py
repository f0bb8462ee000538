"""Filesystem-backed lifecycle records for microVMs."""

from __future__ import annotations

import json
import os
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterator, Optional

import structlog
from pydantic import BaseModel, Field, ValidationError

from ..common.errors import HostOperationError, OperationInProgress
from ..common.schemas import read_json, write_json_atomic
from ..common.settings import VmJailSettings

LOGGER = structlog.get_logger("vmjail.vm.state")


class VmPhase(str, Enum):
    NON_EXISTENT = "non_existent"
    NETWORK_READY = "network_ready"
    CONFIG_READY = "config_ready"
    ARTIFACTS_READY = "artifacts_ready"
    RUNNING = "running"
    STOP_REQUESTED = "stop_requested"
    STOPPED = "stopped"
    FAILED = "failed"
    TORN_DOWN = "torn_down"


class VmStateRecord(BaseModel):
    vm_id: str
    phase: VmPhase
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None


class VmStateStore:
    """One JSON record and one lock file per identity under ``state_dir``."""

    def __init__(self, settings: VmJailSettings) -> None:
        self._directory = settings.state_dir

    def record_path(self, vm_id: str) -> Path:
        return self._directory / f"{vm_id}.json"

    def lock_path(self, vm_id: str) -> Path:
        return self._directory / f"{vm_id}.lock"

    def get(self, vm_id: str) -> Optional[VmStateRecord]:
        path = self.record_path(vm_id)
        if not path.exists():
            return None
        try:
            return VmStateRecord.model_validate(read_json(path))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            LOGGER.warning("Ignoring unreadable state record", vm_id=vm_id, error=str(exc))
            return None

    def set(self, vm_id: str, phase: VmPhase, *, error: Optional[str] = None) -> VmStateRecord:
        record = VmStateRecord(vm_id=vm_id, phase=phase, error=error)
        write_json_atomic(self.record_path(vm_id), record.model_dump(mode="json"))
        LOGGER.debug("State recorded", vm_id=vm_id, phase=phase.value)
        return record

    def in_progress(self, vm_id: str) -> bool:
        return self.lock_path(vm_id).exists()

    @contextmanager
    def claim(self, vm_id: str) -> Iterator[None]:
        """Hold the identity exclusively for the duration of one operation."""

        lock = self.lock_path(vm_id)
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise HostOperationError("Creating directory", self._directory, exc) from exc
        try:
            fd = os.open(lock, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise OperationInProgress(
                f"Another operation holds {vm_id}; remove {lock} if no vmjail process is running"
            ) from exc
        except OSError as exc:
            raise HostOperationError("Locking", lock, exc) from exc
        try:
            os.write(fd, f"{os.getpid()}\n".encode())
        finally:
            os.close(fd)
        try:
            yield
        finally:
            lock.unlink(missing_ok=True)
