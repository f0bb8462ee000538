"""Network namespace provisioning for microVMs through a CNI plugin chain."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from ..common.errors import (
    AmbiguousIdentity,
    ExternalToolFailure,
    MissingInput,
    MissingNetwork,
    VmJailError,
)
from ..common.privileged import PrivilegedOperations
from ..common.schemas import NetworkDescriptor, read_json, write_json_atomic
from ..common.settings import VmJailSettings

LOGGER = structlog.get_logger("vmjail.network.provisioner")


class NetworkProvisioner:
    """Creates and removes a namespace plus CNI attachment per VM identity."""

    def __init__(self, settings: VmJailSettings, operations: PrivilegedOperations) -> None:
        self._settings = settings
        self._ops = operations

    def descriptor_path(self, vm_id: str) -> Path:
        return self._settings.network_dir / f"{vm_id}.json"

    def exists(self, vm_id: str) -> bool:
        return self.descriptor_path(vm_id).exists() and self._ops.netns_exists(vm_id)

    def load(self, vm_id: str) -> NetworkDescriptor:
        path = self.descriptor_path(vm_id)
        if not path.exists():
            raise MissingNetwork(f"No network provisioned for {vm_id}")
        try:
            return NetworkDescriptor.model_validate(read_json(path))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            raise MissingNetwork(f"Network descriptor for {vm_id} is unreadable: {exc}") from exc

    async def create(self, vm_id: str, profile: Optional[str] = None) -> NetworkDescriptor:
        if not vm_id:
            raise MissingInput("A VM identity is required to create a network")
        profile = profile or self._settings.cni_profile

        if self.exists(vm_id):
            LOGGER.info("Network already provisioned", vm_id=vm_id)
            return self.load(vm_id)

        await self._ops.create_netns(vm_id)
        try:
            descriptor = await self._cni_add(vm_id, profile)
            write_json_atomic(self.descriptor_path(vm_id), descriptor.model_dump(mode="json"))
        except VmJailError as exc:
            LOGGER.warning("Network setup failed; rolling back", vm_id=vm_id, profile=profile, error=str(exc))
            await self._rollback(vm_id, profile)
            raise

        LOGGER.info(
            "Network provisioned",
            vm_id=vm_id,
            profile=profile,
            addresses=[ip.address for ip in descriptor.ips],
        )
        return descriptor

    async def _rollback(self, vm_id: str, profile: str) -> None:
        """Undo a partial create so the identity can be provisioned again.

        CNI plugins accept DEL after a failed ADD, so the detach always runs.
        """

        try:
            await self._cni_del(vm_id, profile)
        except VmJailError as exc:
            LOGGER.warning("CNI detach during rollback failed", vm_id=vm_id, error=str(exc))
        try:
            await self._ops.remove_netns(vm_id)
        except VmJailError as exc:
            LOGGER.warning("Namespace removal during rollback failed", vm_id=vm_id, error=str(exc))

    def resolve(self, vm_id: str, *, allow_prefix: bool = True) -> str:
        """Expand ``vm_id`` to the single descriptor it names exactly or by prefix."""

        if not vm_id:
            raise MissingInput("A VM identity is required to resolve a network")
        if self.descriptor_path(vm_id).exists():
            return vm_id
        if not allow_prefix:
            raise MissingNetwork(f"No network provisioned for {vm_id}")
        directory = self._settings.network_dir
        matches = (
            sorted(path.stem for path in directory.glob("*.json") if path.stem.startswith(vm_id))
            if directory.is_dir()
            else []
        )
        if not matches:
            raise MissingNetwork(f"No network provisioned for {vm_id}")
        if len(matches) > 1:
            raise AmbiguousIdentity(vm_id, matches)
        LOGGER.debug("Expanded identity prefix", prefix=vm_id, vm_id=matches[0])
        return matches[0]

    async def destroy(
        self,
        vm_id: str,
        profile: Optional[str] = None,
        *,
        allow_prefix: bool = True,
    ) -> str:
        """Tear down the CNI attachment, namespace, and descriptor.

        All three steps run even when an earlier one fails; the first failure
        is raised once cleanup has been attempted. Returns the resolved identity.
        """

        full_id = self.resolve(vm_id, allow_prefix=allow_prefix)
        profile = profile or self._settings.cni_profile
        failures: list[Exception] = []

        try:
            await self._cni_del(full_id, profile)
        except VmJailError as exc:
            LOGGER.warning("CNI detach failed", vm_id=full_id, error=str(exc))
            failures.append(exc)

        try:
            await self._ops.remove_netns(full_id)
        except (OSError, VmJailError) as exc:
            LOGGER.warning("Namespace removal failed", vm_id=full_id, error=str(exc))
            failures.append(exc)

        try:
            self._ops.unlink(self.descriptor_path(full_id))
        except (OSError, VmJailError) as exc:
            LOGGER.warning("Descriptor removal failed", vm_id=full_id, error=str(exc))
            failures.append(exc)

        if failures:
            first = failures[0]
            if isinstance(first, VmJailError):
                raise first
            raise VmJailError(f"Failed to destroy network {full_id}: {first}") from first
        LOGGER.info("Network destroyed", vm_id=full_id)
        return full_id

    def _cni_env(self, vm_id: str) -> dict[str, str]:
        settings = self._settings
        cni_args = ";".join(
            [
                "IgnoreUnknown=1",
                f"TC_REDIRECT_TAP_UID={settings.jailer_uid}",
                f"TC_REDIRECT_TAP_GID={settings.jailer_gid}",
                f"TC_REDIRECT_TAP_NAME={settings.tap_name}",
            ]
        )
        return {
            "CNI_PATH": str(settings.cni_bin_dir),
            "NETCONFPATH": str(settings.cni_conf_dir),
            "CNI_IFNAME": settings.cni_ifname,
            "CNI_ARGS": cni_args,
        }

    async def _cni_add(self, vm_id: str, profile: str) -> NetworkDescriptor:
        result = await self._ops.run(
            [self._settings.cnitool_bin_path, "add", profile, str(self._settings.netns_path(vm_id))],
            env=self._cni_env(vm_id),
        )
        if not result.ok:
            raise ExternalToolFailure("cnitool add", result.returncode, result.stderr or result.stdout)
        try:
            return NetworkDescriptor.model_validate_json(result.stdout)
        except ValidationError as exc:
            raise ExternalToolFailure(
                "cnitool add",
                result.returncode,
                f"unparseable network result: {exc.errors()[0]['msg'] if exc.errors() else exc}",
            ) from exc

    async def _cni_del(self, vm_id: str, profile: str) -> None:
        result = await self._ops.run(
            [self._settings.cnitool_bin_path, "del", profile, str(self._settings.netns_path(vm_id))],
            env=self._cni_env(vm_id),
        )
        if not result.ok:
            raise ExternalToolFailure("cnitool del", result.returncode, result.stderr or result.stdout)
