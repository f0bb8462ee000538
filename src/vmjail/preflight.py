"""Environment checks run before any lifecycle command."""

from __future__ import annotations

import os
import shutil
from pathlib import Path

import structlog

from .common.errors import MissingDependency
from .common.settings import VmJailSettings

LOGGER = structlog.get_logger("vmjail.preflight")


def _resolve_binary(candidate: str) -> str | None:
    path = Path(candidate)
    if path.is_absolute() or os.sep in candidate:
        return str(path) if path.is_file() and os.access(path, os.X_OK) else None
    return shutil.which(candidate)


def check_environment(settings: VmJailSettings) -> dict[str, str]:
    """Return resolved tool locations; raise ``MissingDependency`` listing every gap."""

    tools = {
        "firecracker": settings.firecracker_bin_path,
        "jailer": settings.jailer_bin_path,
        "cnitool": settings.cnitool_bin_path,
    }
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for name, candidate in tools.items():
        location = _resolve_binary(candidate)
        if location is None:
            missing.append(f"{name} ({candidate})")
        else:
            resolved[name] = location

    for label, directory in (("CNI plugin dir", settings.cni_bin_dir), ("CNI config dir", settings.cni_conf_dir)):
        if directory.is_dir():
            resolved[label] = str(directory)
        else:
            missing.append(f"{label} ({directory})")

    if missing:
        raise MissingDependency("missing dependencies: " + ", ".join(missing))

    if not Path("/dev/kvm").exists():
        LOGGER.warning("KVM device not present; microVMs will fail to boot", path="/dev/kvm")
    LOGGER.debug("Preflight passed", tools=resolved)
    return resolved
