"""Host operations that need elevated privileges.

Every component performs namespace, ownership, link, and process actions
through :class:`PrivilegedOperations` so tests can substitute a recording fake
and deployments can wrap the calls (sudo helper, capability-restricted daemon).
"""

from __future__ import annotations

import asyncio
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

import structlog
from pyroute2 import NetlinkError, netns

from .errors import HostOperationError, MissingDependency, NamespaceCreateError
from .settings import VmJailSettings

LOGGER = structlog.get_logger("vmjail.common.privileged")


@dataclass
class CommandResult:
    """Captured outcome of an external command."""

    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class PrivilegedOperations:
    """Default implementation acting directly on the local host."""

    def __init__(self, settings: VmJailSettings) -> None:
        self._settings = settings

    def netns_exists(self, name: str) -> bool:
        return self._settings.netns_path(name).exists()

    async def create_netns(self, name: str) -> None:
        LOGGER.debug("Creating network namespace", namespace=name)
        try:
            await asyncio.to_thread(netns.create, name)
        except FileExistsError as exc:
            raise NamespaceCreateError(f"Network namespace {name} already exists") from exc
        except (OSError, NetlinkError) as exc:
            raise NamespaceCreateError(f"Failed to create network namespace {name}: {exc}") from exc

    async def remove_netns(self, name: str) -> None:
        LOGGER.debug("Removing network namespace", namespace=name)
        try:
            await asyncio.to_thread(netns.remove, name)
        except FileNotFoundError:
            LOGGER.debug("Network namespace already absent", namespace=name)
        except (OSError, NetlinkError) as exc:
            raise HostOperationError("Removing network namespace", name, exc) from exc

    def make_dir(self, path: Path) -> None:
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise HostOperationError("Creating directory", path, exc) from exc

    def hard_link(self, source: Path, destination: Path) -> None:
        self.make_dir(destination.parent)
        try:
            os.link(source, destination)
        except OSError as exc:
            raise HostOperationError(f"Linking {source} to", destination, exc) from exc

    def unlink(self, path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise HostOperationError("Removing", path, exc) from exc

    def chown(self, path: Path, uid: int, gid: int) -> None:
        try:
            os.chown(path, uid, gid)
        except OSError as exc:
            raise HostOperationError(f"Changing owner to {uid}:{gid} of", path, exc) from exc

    def ensure_file(self, path: Path) -> None:
        self.make_dir(path.parent)
        try:
            path.touch(exist_ok=True)
        except OSError as exc:
            raise HostOperationError("Creating", path, exc) from exc

    def remove_tree(self, path: Path) -> None:
        try:
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            else:
                path.unlink(missing_ok=True)
        except OSError as exc:
            raise HostOperationError("Removing", path, exc) from exc

    async def run(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Mapping[str, str]] = None,
    ) -> CommandResult:
        command = [str(part) for part in argv]
        merged_env = None
        if env is not None:
            merged_env = dict(os.environ)
            merged_env.update(env)
        LOGGER.debug("Running command", argv=command)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=merged_env,
            )
        except FileNotFoundError as exc:
            raise MissingDependency(f"{command[0]} not found") from exc
        except OSError as exc:
            raise HostOperationError("Running", command[0], exc) from exc
        stdout, stderr = await process.communicate()
        return CommandResult(
            argv=command,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )
