"""Graceful shutdown of jailed Firecracker processes."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Callable, Optional

import httpx
import structlog

from ..common.errors import ShutdownCancelled, ShutdownTimeout, ShutdownUnresponsive
from ..common.privileged import PrivilegedOperations
from ..common.settings import VmJailSettings
from .artifacts import JailLayout, jail_layout

LOGGER = structlog.get_logger("vmjail.vm.process")

TransportFactory = Callable[[Path], httpx.AsyncBaseTransport]


def _uds_transport(socket_path: Path) -> httpx.AsyncBaseTransport:
    return httpx.AsyncHTTPTransport(uds=str(socket_path))


def pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ProcessController:
    """Stops a running VM through its API socket and cleans runtime files."""

    def __init__(
        self,
        settings: VmJailSettings,
        operations: PrivilegedOperations,
        *,
        transport_factory: Optional[TransportFactory] = None,
    ) -> None:
        self._settings = settings
        self._ops = operations
        self._transport_factory = transport_factory or _uds_transport

    def layout(self, vm_id: str) -> JailLayout:
        return jail_layout(self._settings, vm_id)

    def read_pid(self, vm_id: str) -> Optional[int]:
        pid_file = self.layout(vm_id).pid_file
        try:
            content = pid_file.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        try:
            return int(content)
        except ValueError:
            LOGGER.warning("Ignoring malformed pid file", vm_id=vm_id, path=str(pid_file))
            return None

    def is_running(self, vm_id: str) -> bool:
        pid = self.read_pid(vm_id)
        return pid is not None and pid_alive(pid)

    async def stop(
        self,
        vm_id: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> bool:
        """Shut the VM down; returns False when it was not running."""

        layout = self.layout(vm_id)
        pid = self.read_pid(vm_id)
        if pid is None or not pid_alive(pid):
            LOGGER.info("VM already stopped", vm_id=vm_id, pid=pid)
            self.clean_runtime(layout)
            return False

        LOGGER.info("Requesting VM shutdown", vm_id=vm_id, pid=pid)
        await self.send_ctrl_alt_del(layout.api_socket)

        limit = self._settings.shutdown_timeout_seconds if timeout is None else timeout
        try:
            await asyncio.wait_for(self._wait_for_exit(pid, cancel), limit)
        except asyncio.TimeoutError as exc:
            raise ShutdownTimeout(f"VM {vm_id} (pid {pid}) still running after {limit:g}s") from exc

        LOGGER.info("VM stopped", vm_id=vm_id, pid=pid)
        self.clean_runtime(layout)
        return True

    async def send_ctrl_alt_del(self, api_socket: Path) -> None:
        transport = self._transport_factory(api_socket)
        try:
            async with httpx.AsyncClient(transport=transport, base_url="http://localhost") as client:
                response = await client.put("/actions", json={"action_type": "SendCtrlAltDel"})
        except httpx.HTTPError as exc:
            raise ShutdownUnresponsive(f"Control channel {api_socket} unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise ShutdownUnresponsive(
                f"Firecracker API /actions failed: {response.status_code} {response.text.strip()}"
            )

    async def _wait_for_exit(self, pid: int, cancel: Optional[asyncio.Event]) -> None:
        interval = self._settings.shutdown_poll_interval_seconds
        while pid_alive(pid):
            if cancel is not None and cancel.is_set():
                raise ShutdownCancelled(f"Shutdown wait for pid {pid} cancelled")
            await asyncio.sleep(interval)

    def clean_runtime(self, layout: JailLayout) -> None:
        for path in layout.runtime_paths:
            if path.exists() or path.is_symlink():
                self._ops.remove_tree(path)
                LOGGER.debug("Removed runtime artifact", vm_id=layout.vm_id, path=str(path))
