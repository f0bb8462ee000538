"""Materialize per-VM Firecracker configs from a template and a CNI result."""

from __future__ import annotations

import ipaddress
import json
import re
from pathlib import Path
from typing import Any

import structlog
from pydantic import ValidationError

from ..common.errors import MissingInput, MissingNetwork, MissingTemplate
from ..common.schemas import NetworkDescriptor, VmConfigTemplate, read_json, write_json_atomic
from ..common.settings import VmJailSettings

LOGGER = structlog.get_logger("vmjail.vm.config")

# Linux truncates the ip= hostname field.
HOSTNAME_MAX_LENGTH = 16
_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")


def load_template(path: Path) -> VmConfigTemplate:
    path = Path(path)
    if not path.exists():
        raise MissingTemplate(f"VM config template not found: {path}")
    try:
        return VmConfigTemplate.model_validate(read_json(path))
    except (OSError, json.JSONDecodeError) as exc:
        raise MissingInput(f"VM config template {path} is unreadable: {exc}") from exc
    except ValidationError as exc:
        raise MissingInput(f"VM config template {path} is invalid: {exc}") from exc


def hostname_for(vm_id: str) -> str:
    return _NON_ALNUM.sub("", vm_id)[:HOSTNAME_MAX_LENGTH]


def kernel_ip_clause(address: str, gateway: str, netmask: str, hostname: str, device: str = "eth0") -> str:
    return f"ip={address}::{gateway}:{netmask}:{hostname}:{device}:off"


class ConfigTemplater:
    """Writes ``<config_dir>/<id>.json`` with network values interpolated."""

    def __init__(self, settings: VmJailSettings) -> None:
        self._settings = settings

    def config_path(self, vm_id: str) -> Path:
        return self._settings.config_dir / f"{vm_id}.json"

    def render(self, vm_id: str, template: VmConfigTemplate, descriptor: NetworkDescriptor) -> dict[str, Any]:
        ifname = self._settings.cni_ifname
        interface = descriptor.interface(ifname)
        if interface is None or not interface.mac:
            raise MissingNetwork(f"Network for {vm_id} has no {ifname} interface with a MAC address")
        if not descriptor.ips:
            raise MissingNetwork(f"Network for {vm_id} has no IP allocation")

        allocation = descriptor.ips[0]
        try:
            guest = ipaddress.ip_interface(allocation.address)
        except ValueError as exc:
            raise MissingNetwork(f"Network for {vm_id} has an invalid address {allocation.address!r}") from exc
        gateway = allocation.gateway or ""

        clause = kernel_ip_clause(
            str(guest.ip),
            gateway,
            str(guest.netmask),
            hostname_for(vm_id),
        )

        config = template.document()
        boot_source = config["boot-source"]
        boot_args = str(boot_source.get("boot_args") or "").strip()
        boot_source["boot_args"] = f"{boot_args} {clause}" if boot_args else clause

        interfaces = config.get("network-interfaces") or []
        if not interfaces:
            interfaces = [{"iface_id": ifname, "host_dev_name": self._settings.tap_name}]
        interfaces[0]["guest_mac"] = interface.mac
        config["network-interfaces"] = interfaces
        return config

    def materialize(
        self,
        vm_id: str,
        template: VmConfigTemplate,
        descriptor: NetworkDescriptor,
    ) -> dict[str, Any]:
        if not vm_id:
            raise MissingInput("A VM identity is required to materialize a config")
        config = self.render(vm_id, template, descriptor)
        path = self.config_path(vm_id)
        write_json_atomic(path, config)
        LOGGER.info("VM config written", vm_id=vm_id, path=str(path))
        return config
