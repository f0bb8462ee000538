"""Create and destroy jailed, network-attached Firecracker microVMs."""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
from opentelemetry import trace

from ..common.errors import ExternalToolFailure, MissingInput, MissingNetwork, VmJailError
from ..common.privileged import PrivilegedOperations
from ..common.settings import VmJailSettings
from ..network.provisioner import NetworkProvisioner
from .artifacts import ArtifactLinker, JailLayout
from .config import ConfigTemplater, load_template
from .process import ProcessController, pid_alive
from .state import VmPhase, VmStateStore

LOGGER = structlog.get_logger("vmjail.vm.lifecycle")
TRACER = trace.get_tracer("vmjail.vm.lifecycle")


@dataclass
class VmStatus:
    """Observed state of one VM identity."""

    vm_id: str
    phase: VmPhase
    network_provisioned: bool
    namespace_present: bool
    config_present: bool
    jail_present: bool
    pid: Optional[int]
    running: bool
    operation_in_progress: bool
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload


class VmLifecycleManager:
    """Sequences network, config, artifacts, and launch for one VM identity."""

    def __init__(
        self,
        settings: VmJailSettings,
        operations: Optional[PrivilegedOperations] = None,
        *,
        process_controller: Optional[ProcessController] = None,
    ) -> None:
        self._settings = settings
        self._ops = operations or PrivilegedOperations(settings)
        self.network = NetworkProvisioner(settings, self._ops)
        self.templater = ConfigTemplater(settings)
        self.linker = ArtifactLinker(settings, self._ops, self.templater)
        self.process = process_controller or ProcessController(settings, self._ops)
        self.state = VmStateStore(settings)

    async def create(
        self,
        vm_id: str,
        cni_profile: Optional[str] = None,
        template_path: Optional[Path] = None,
    ) -> VmStatus:
        if not vm_id:
            raise MissingInput("A VM identity is required to create a VM")
        template_path = template_path or self._settings.template_path
        if not str(template_path):
            raise MissingInput("A config template path is required to create a VM")
        profile = cni_profile or self._settings.cni_profile

        with self.state.claim(vm_id), TRACER.start_as_current_span("vm.create") as span:
            span.set_attribute("vm.id", vm_id)
            span.set_attribute("vm.cni_profile", profile)
            if self.process.is_running(vm_id):
                LOGGER.info("VM already running", vm_id=vm_id)
                return self.status(vm_id)
            try:
                template = load_template(template_path)
                descriptor = await self.network.create(vm_id, profile)
                self.state.set(vm_id, VmPhase.NETWORK_READY)

                self.templater.materialize(vm_id, template, descriptor)
                self.state.set(vm_id, VmPhase.CONFIG_READY)

                layout = self.linker.link(vm_id, template)
                self.state.set(vm_id, VmPhase.ARTIFACTS_READY)

                await self._launch(layout)
                self.state.set(vm_id, VmPhase.RUNNING)
            except VmJailError as exc:
                span.record_exception(exc)
                if self.state.get(vm_id) is not None or self.network.exists(vm_id):
                    self._record_failure(vm_id, exc)
                LOGGER.error("VM creation failed", vm_id=vm_id, error=str(exc))
                raise

        LOGGER.info("VM created", vm_id=vm_id, profile=profile)
        return self.status(vm_id)

    def _record_failure(self, vm_id: str, exc: VmJailError) -> None:
        try:
            self.state.set(vm_id, VmPhase.FAILED, error=str(exc))
        except VmJailError as record_exc:
            LOGGER.warning("Could not record failure", vm_id=vm_id, error=str(record_exc))

    def jailer_command(self, layout: JailLayout) -> list[str]:
        settings = self._settings
        command = [
            settings.jailer_bin_path,
            "--id",
            layout.vm_id,
            "--exec-file",
            settings.firecracker_bin_path,
            "--uid",
            str(settings.jailer_uid),
            "--gid",
            str(settings.jailer_gid),
            "--chroot-base-dir",
            str(settings.chroot_base),
            "--netns",
            str(settings.netns_path(layout.vm_id)),
            "--daemonize",
        ]
        if settings.jailer_cgroup_version:
            command.extend(["--cgroup-version", str(settings.jailer_cgroup_version)])
        command.extend(
            [
                "--",
                "--config-file",
                settings.jail_config_name,
                "--log-path",
                settings.jail_log_name,
                "--level",
                settings.firecracker_log_level,
            ]
        )
        return command

    async def _launch(self, layout: JailLayout) -> None:
        command = self.jailer_command(layout)
        LOGGER.info(
            "Spawning Firecracker with jailer",
            vm_id=layout.vm_id,
            uid=self._settings.jailer_uid,
            gid=self._settings.jailer_gid,
            netns=str(self._settings.netns_path(layout.vm_id)),
        )
        result = await self._ops.run(command)
        if not result.ok:
            raise ExternalToolFailure("jailer", result.returncode, result.stderr or result.stdout)

    async def stop(
        self,
        vm_id: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> bool:
        if not vm_id:
            raise MissingInput("A VM identity is required to stop a VM")
        with self.state.claim(vm_id), TRACER.start_as_current_span("vm.stop") as span:
            span.set_attribute("vm.id", vm_id)
            return await self._stop(vm_id, timeout=timeout, cancel=cancel)

    async def _stop(
        self,
        vm_id: str,
        *,
        timeout: Optional[float] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> bool:
        running = self.process.is_running(vm_id)
        if running:
            self.state.set(vm_id, VmPhase.STOP_REQUESTED)
        try:
            stopped = await self.process.stop(vm_id, timeout=timeout, cancel=cancel)
        except VmJailError as exc:
            self._record_failure(vm_id, exc)
            raise
        if running or self.state.get(vm_id) is not None:
            self.state.set(vm_id, VmPhase.STOPPED)
        return stopped

    async def destroy(
        self,
        vm_id: str,
        cni_profile: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> None:
        """Stop the VM, remove its jail, config and network, and record it as torn down."""

        if not vm_id:
            raise MissingInput("A VM identity is required to destroy a VM")

        with self.state.claim(vm_id), TRACER.start_as_current_span("vm.destroy") as span:
            span.set_attribute("vm.id", vm_id)
            layout = self.linker.layout(vm_id)
            config_path = self.templater.config_path(vm_id)
            record = self.state.get(vm_id)
            found = any(
                (
                    record is not None and record.phase is not VmPhase.TORN_DOWN,
                    layout.chroot_dir.exists(),
                    config_path.exists(),
                    self.network.descriptor_path(vm_id).exists(),
                    self._ops.netns_exists(vm_id),
                )
            )
            if not found:
                raise MissingNetwork(f"Nothing to destroy for {vm_id}")

            await self._stop(vm_id, timeout=timeout)

            if layout.chroot_dir.exists():
                self._ops.remove_tree(layout.chroot_dir)
                LOGGER.debug("Removed jail", vm_id=vm_id, path=str(layout.chroot_dir))
            self._ops.unlink(config_path)

            try:
                await self.network.destroy(vm_id, cni_profile, allow_prefix=False)
            except MissingNetwork:
                LOGGER.warning("No network descriptor during destroy", vm_id=vm_id)
                if self._ops.netns_exists(vm_id):
                    await self._ops.remove_netns(vm_id)

            self.state.set(vm_id, VmPhase.TORN_DOWN)
        LOGGER.info("VM destroyed", vm_id=vm_id)

    def status(self, vm_id: str) -> VmStatus:
        if not vm_id:
            raise MissingInput("A VM identity is required to query a VM")
        record = self.state.get(vm_id)
        layout = self.linker.layout(vm_id)
        pid = self.process.read_pid(vm_id)
        running = pid is not None and pid_alive(pid)
        network_provisioned = self.network.descriptor_path(vm_id).exists()
        config_present = self.templater.config_path(vm_id).exists()
        jail_present = layout.root.exists()

        if running:
            phase = VmPhase.RUNNING
        elif record is not None and record.phase is not VmPhase.TORN_DOWN:
            phase = VmPhase.STOPPED if record.phase is VmPhase.RUNNING else record.phase
        elif jail_present:
            phase = VmPhase.STOPPED
        elif config_present:
            phase = VmPhase.CONFIG_READY
        elif network_provisioned:
            phase = VmPhase.NETWORK_READY
        elif record is not None:
            phase = VmPhase.TORN_DOWN
        else:
            phase = VmPhase.NON_EXISTENT

        return VmStatus(
            vm_id=vm_id,
            phase=phase,
            network_provisioned=network_provisioned,
            namespace_present=self._ops.netns_exists(vm_id),
            config_present=config_present,
            jail_present=jail_present,
            pid=pid,
            running=running,
            operation_in_progress=self.state.in_progress(vm_id),
            error=record.error if record else None,
        )
