"""Data models for CNI results and Firecracker configuration documents."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .errors import HostOperationError


class CniInterface(BaseModel):
    """Interface entry reported by a CNI plugin chain."""

    model_config = ConfigDict(extra="allow")

    name: str
    mac: Optional[str] = None
    sandbox: Optional[str] = None


class CniIpAllocation(BaseModel):
    """IP allocation entry reported by a CNI plugin chain."""

    model_config = ConfigDict(extra="allow")

    address: str
    gateway: Optional[str] = None
    interface: Optional[int] = None


class NetworkDescriptor(BaseModel):
    """CNI ADD result persisted as the record of a provisioned network."""

    model_config = ConfigDict(extra="allow")

    interfaces: list[CniInterface] = Field(default_factory=list)
    ips: list[CniIpAllocation] = Field(default_factory=list)

    def interface(self, name: str) -> Optional[CniInterface]:
        for entry in self.interfaces:
            if entry.name == name:
                return entry
        return None


class BootSource(BaseModel):
    model_config = ConfigDict(extra="allow")

    kernel_image_path: str
    initrd_path: Optional[str] = None
    boot_args: str = ""


class Drive(BaseModel):
    model_config = ConfigDict(extra="allow")

    drive_id: Optional[str] = None
    path_on_host: str
    is_root_device: bool = False


class NetworkInterface(BaseModel):
    model_config = ConfigDict(extra="allow")

    iface_id: Optional[str] = None
    host_dev_name: Optional[str] = None
    guest_mac: Optional[str] = None


class VmConfigTemplate(BaseModel):
    """Firecracker configuration template; unknown sections pass through untouched."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    boot_source: BootSource = Field(alias="boot-source")
    drives: list[Drive] = Field(default_factory=list)
    network_interfaces: list[NetworkInterface] = Field(
        default_factory=list,
        alias="network-interfaces",
    )

    def document(self) -> dict[str, Any]:
        """Return the template as a Firecracker config document."""

        return self.model_dump(by_alias=True, exclude_unset=True)


def read_json(path: Path) -> Any:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON next to ``path`` and rename it into place."""

    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    except OSError as exc:
        raise HostOperationError("Writing", path, exc) from exc
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
            handle.write("\n")
        os.replace(tmp_name, path)
    except OSError as exc:
        Path(tmp_name).unlink(missing_ok=True)
        raise HostOperationError("Writing", path, exc) from exc
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
