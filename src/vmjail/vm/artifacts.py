"""Populate the jailer chroot with hard links to VM artifacts."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional

import structlog

from ..common.errors import MissingInput
from ..common.privileged import PrivilegedOperations
from ..common.schemas import VmConfigTemplate
from ..common.settings import VmJailSettings
from .config import ConfigTemplater

LOGGER = structlog.get_logger("vmjail.vm.artifacts")

INITRD_SENTINELS = {"", "none", "null"}


@dataclass(frozen=True)
class JailLayout:
    """Host-side paths of one VM's jailer chroot."""

    vm_id: str
    chroot_dir: Path
    root: Path
    config: Path
    log: Path
    pid_file: Path
    api_socket: Path
    exec_copy: Path

    @property
    def runtime_paths(self) -> tuple[Path, ...]:
        """Entries the jailer creates at launch and ``stop`` removes."""

        return (self.pid_file, self.root / "dev", self.root / "run", self.exec_copy)


def jail_layout(settings: VmJailSettings, vm_id: str) -> JailLayout:
    chroot_dir = settings.chroot_base / settings.exec_name / vm_id
    root = chroot_dir / "root"
    return JailLayout(
        vm_id=vm_id,
        chroot_dir=chroot_dir,
        root=root,
        config=root / settings.jail_config_name,
        log=root / settings.jail_log_name,
        pid_file=root / f"{settings.exec_name}.pid",
        api_socket=root / settings.api_socket_name,
        exec_copy=root / settings.exec_name,
    )


def jail_relative(path: str) -> PurePosixPath:
    relative = PurePosixPath(path)
    if relative.is_absolute():
        relative = relative.relative_to("/")
    if not relative.parts or ".." in relative.parts:
        raise MissingInput(f"Artifact path {path!r} cannot be placed inside the jail")
    return relative


class ArtifactLinker:
    """Hard-links kernel, initrd, drives, and config into a VM's jail root."""

    def __init__(
        self,
        settings: VmJailSettings,
        operations: PrivilegedOperations,
        templater: Optional[ConfigTemplater] = None,
    ) -> None:
        self._settings = settings
        self._ops = operations
        self._templater = templater or ConfigTemplater(settings)

    def layout(self, vm_id: str) -> JailLayout:
        return jail_layout(self._settings, vm_id)

    def artifacts(self, template: VmConfigTemplate) -> Iterator[tuple[Path, PurePosixPath]]:
        """Yield ``(source, jail-relative path)`` for every file the VM boots from."""

        boot = template.boot_source
        kernel_dir = self._settings.kernel_dir
        rootfs_dir = self._settings.rootfs_dir

        kernel = jail_relative(boot.kernel_image_path)
        yield kernel_dir / kernel, kernel

        if boot.initrd_path is not None and boot.initrd_path.strip().lower() not in INITRD_SENTINELS:
            initrd = jail_relative(boot.initrd_path)
            yield kernel_dir / initrd, initrd

        for drive in sorted(template.drives, key=lambda item: not item.is_root_device):
            relative = jail_relative(drive.path_on_host)
            yield rootfs_dir / relative, relative

    def link(self, vm_id: str, template: VmConfigTemplate) -> JailLayout:
        if not vm_id:
            raise MissingInput("A VM identity is required to link artifacts")
        config_source = self._templater.config_path(vm_id)
        if not config_source.exists():
            raise MissingInput(f"No VM config written for {vm_id}: {config_source}")

        layout = self.layout(vm_id)
        self._ops.make_dir(layout.root)
        uid, gid = self._settings.jailer_uid, self._settings.jailer_gid

        for source, relative in self.artifacts(template):
            destination = layout.root / relative
            if destination.exists():
                LOGGER.debug("Artifact already linked", vm_id=vm_id, path=str(relative))
                continue
            if not source.is_file():
                raise MissingInput(f"Artifact not found: {source}")
            self._ops.hard_link(source, destination)
            self._ops.chown(destination, uid, gid)
            LOGGER.debug("Linked artifact", vm_id=vm_id, source=str(source), path=str(relative))

        # the generated config is replaced on every materialize; follow the new inode
        if layout.config.exists() and not layout.config.samefile(config_source):
            LOGGER.debug("Relinking regenerated config", vm_id=vm_id)
            self._ops.unlink(layout.config)
        if not layout.config.exists():
            self._ops.hard_link(config_source, layout.config)
            self._ops.chown(layout.config, 0, 0)

        if not layout.log.exists():
            self._ops.ensure_file(layout.log)
        self._ops.chown(layout.log, uid, gid)

        LOGGER.info("Jail root prepared", vm_id=vm_id, root=str(layout.root))
        return layout
