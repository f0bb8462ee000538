from __future__ import annotations

import json
from pathlib import Path

import pytest

from tests.utils.fakes import SAMPLE_TEMPLATE, FakeOperations, cni_add_ok
from vmjail.common.schemas import VmConfigTemplate
from vmjail.common.settings import VmJailSettings


@pytest.fixture
def settings(tmp_path: Path, monkeypatch) -> VmJailSettings:
    monkeypatch.chdir(tmp_path)
    env = {
        "VMJAIL_FC_BIN": "/usr/bin/firecracker",
        "VMJAIL_JAILER_BIN": "/usr/bin/jailer",
        "VMJAIL_CNITOOL_BIN": "cnitool",
        "VMJAIL_JAILER_UID": "123",
        "VMJAIL_JAILER_GID": "456",
        "VMJAIL_CHROOT_BASE": str(tmp_path / "jailer"),
        "VMJAIL_NETNS_DIR": str(tmp_path / "netns"),
        "VMJAIL_NETWORK_DIR": str(tmp_path / "networks"),
        "VMJAIL_CONFIG_DIR": str(tmp_path / "configs"),
        "VMJAIL_STATE_DIR": str(tmp_path / "state"),
        "VMJAIL_KERNEL_DIR": str(tmp_path / "kernels"),
        "VMJAIL_ROOTFS_DIR": str(tmp_path / "rootfs"),
        "VMJAIL_TEMPLATE": str(tmp_path / "template.json"),
        "VMJAIL_CNI_BIN_DIR": str(tmp_path / "cni" / "bin"),
        "VMJAIL_CNI_CONF_DIR": str(tmp_path / "cni" / "conf.d"),
        "VMJAIL_SHUTDOWN_POLL_INTERVAL": "0.01",
        "VMJAIL_SHUTDOWN_TIMEOUT": "1",
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    return VmJailSettings()


@pytest.fixture
def operations(settings: VmJailSettings) -> FakeOperations:
    ops = FakeOperations(settings)
    ops.on("cnitool", "add", cni_add_ok())
    return ops


@pytest.fixture
def template_path(settings: VmJailSettings) -> Path:
    """Write the sample template plus the kernel and drive images it references."""

    settings.kernel_dir.mkdir(parents=True)
    (settings.kernel_dir / "vmlinux-5.10.bin").write_bytes(b"kernel")
    (settings.rootfs_dir / "rootfs").mkdir(parents=True)
    (settings.rootfs_dir / "rootfs" / "ubuntu-22.04.ext4").write_bytes(b"rootfs")
    (settings.rootfs_dir / "data.ext4").write_bytes(b"data")
    settings.template_path.write_text(json.dumps(SAMPLE_TEMPLATE), encoding="utf-8")
    return settings.template_path


@pytest.fixture
def template(template_path: Path) -> VmConfigTemplate:
    return VmConfigTemplate.model_validate(json.loads(template_path.read_text(encoding="utf-8")))
