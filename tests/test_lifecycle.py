from __future__ import annotations

import errno
import json
import os

import pytest

from tests.utils.fakes import command_failure
from vmjail.common import privileged as privileged_module
from vmjail.common.errors import (
    ExternalToolFailure,
    HostOperationError,
    MissingInput,
    MissingNetwork,
    MissingTemplate,
    OperationInProgress,
)
from vmjail.vm import process as process_module
from vmjail.vm.lifecycle import VmLifecycleManager
from vmjail.vm.state import VmPhase


@pytest.mark.asyncio
async def test_create_runs_every_stage(settings, operations, template_path):
    manager = VmLifecycleManager(settings, operations)

    status = await manager.create("vm-test-001", "fcnet", template_path)

    assert manager.state.get("vm-test-001").phase is VmPhase.RUNNING
    # the fake jailer never writes a pid file
    assert status.running is False
    assert status.network_provisioned and status.namespace_present
    assert status.config_present and status.jail_present

    (jailer,) = operations.commands_for("jailer")
    layout = manager.linker.layout("vm-test-001")
    assert jailer[:2] == ["/usr/bin/jailer", "--id"]
    assert jailer[jailer.index("--netns") + 1] == str(settings.netns_dir / "vm-test-001")
    assert jailer[jailer.index("--chroot-base-dir") + 1] == str(settings.chroot_base)
    assert jailer[jailer.index("--uid") + 1] == "123"
    assert "--daemonize" in jailer
    tail = jailer[jailer.index("--") + 1 :]
    assert tail[:2] == ["--config-file", "config.json"]
    assert (layout.root / "config.json").exists()

    first_command = operations.commands[0][0]
    assert first_command[:2] == ["cnitool", "add"]


@pytest.mark.asyncio
async def test_create_then_destroy_leaves_nothing_behind(settings, operations, template_path):
    manager = VmLifecycleManager(settings, operations)
    await manager.create("vm-test-001", "fcnet", template_path)

    await manager.destroy("vm-test-001", "fcnet")

    assert not manager.network.descriptor_path("vm-test-001").exists()
    assert not operations.netns_exists("vm-test-001")
    assert not manager.linker.layout("vm-test-001").chroot_dir.exists()
    assert not manager.templater.config_path("vm-test-001").exists()
    assert manager.state.get("vm-test-001").phase is VmPhase.TORN_DOWN
    assert manager.status("vm-test-001").phase is VmPhase.TORN_DOWN
    assert len(operations.commands_for("cnitool", "del")) == 1


@pytest.mark.asyncio
async def test_create_requires_identity_and_template(settings, operations):
    manager = VmLifecycleManager(settings, operations)

    with pytest.raises(MissingInput):
        await manager.create("", "fcnet")
    with pytest.raises(MissingTemplate):
        await manager.create("vm-1", "fcnet", settings.template_path)
    assert operations.commands == []
    assert operations.netns_created == []


@pytest.mark.asyncio
async def test_jailer_failure_surfaces_and_keeps_partial_state(settings, operations, template_path):
    operations.on("jailer", "--id", command_failure("Failed to create chroot"))
    manager = VmLifecycleManager(settings, operations)

    with pytest.raises(ExternalToolFailure) as excinfo:
        await manager.create("vm-1", "fcnet", template_path)

    assert excinfo.value.tool == "jailer"
    record = manager.state.get("vm-1")
    assert record.phase is VmPhase.FAILED
    assert "Failed to create chroot" in record.error
    assert manager.network.exists("vm-1")
    assert manager.linker.layout("vm-1").root.exists()
    assert not manager.state.in_progress("vm-1")

    await manager.destroy("vm-1")
    assert not manager.network.exists("vm-1")
    assert not manager.linker.layout("vm-1").chroot_dir.exists()


@pytest.mark.asyncio
async def test_create_is_refused_while_identity_is_claimed(settings, operations, template_path):
    manager = VmLifecycleManager(settings, operations)

    with manager.state.claim("vm-1"):
        with pytest.raises(OperationInProgress):
            await manager.create("vm-1", "fcnet", template_path)
    assert operations.netns_created == []


@pytest.mark.asyncio
async def test_create_skips_launch_when_already_running(settings, operations, template_path, monkeypatch):
    manager = VmLifecycleManager(settings, operations)
    await manager.create("vm-1", "fcnet", template_path)
    layout = manager.linker.layout("vm-1")
    layout.pid_file.write_text("4242", encoding="utf-8")
    monkeypatch.setattr(process_module, "pid_alive", lambda pid: True)
    monkeypatch.setattr("vmjail.vm.lifecycle.pid_alive", lambda pid: True)

    status = await manager.create("vm-1", "fcnet", template_path)

    assert status.running is True
    assert len(operations.commands_for("jailer")) == 1


@pytest.mark.asyncio
async def test_stop_records_stopped_phase(settings, operations, template_path):
    manager = VmLifecycleManager(settings, operations)
    await manager.create("vm-1", "fcnet", template_path)

    assert await manager.stop("vm-1") is False
    assert manager.state.get("vm-1").phase is VmPhase.STOPPED
    assert manager.status("vm-1").phase is VmPhase.STOPPED


@pytest.mark.asyncio
async def test_destroy_unknown_identity(settings, operations):
    manager = VmLifecycleManager(settings, operations)

    with pytest.raises(MissingNetwork):
        await manager.destroy("ghost")


@pytest.mark.asyncio
async def test_destroy_removes_orphaned_namespace(settings, operations):
    settings.netns_dir.mkdir(parents=True)
    (settings.netns_dir / "vm-1").touch()
    manager = VmLifecycleManager(settings, operations)

    await manager.destroy("vm-1")

    assert operations.netns_removed == ["vm-1"]
    assert operations.commands_for("cnitool", "del") == []


def test_status_of_unknown_identity(settings, operations):
    status = VmLifecycleManager(settings, operations).status("ghost")

    assert status.phase is VmPhase.NON_EXISTENT
    assert status.to_dict()["phase"] == "non_existent"
    assert status.pid is None


@pytest.mark.asyncio
async def test_destroy_twice_reports_nothing_left(settings, operations, template_path):
    manager = VmLifecycleManager(settings, operations)
    await manager.create("vm-1", "fcnet", template_path)
    await manager.destroy("vm-1")

    with pytest.raises(MissingNetwork):
        await manager.destroy("vm-1")
    assert len(operations.commands_for("cnitool", "del")) == 1


@pytest.mark.asyncio
async def test_link_failure_marks_record_failed(settings, operations, template_path, monkeypatch):
    def cross_device(source, destination):
        raise OSError(errno.EXDEV, os.strerror(errno.EXDEV))

    monkeypatch.setattr(privileged_module.os, "link", cross_device)
    manager = VmLifecycleManager(settings, operations)

    with pytest.raises(HostOperationError) as excinfo:
        await manager.create("vm-1", "fcnet", template_path)

    assert excinfo.value.errno == errno.EXDEV
    assert isinstance(excinfo.value.__cause__, OSError)
    record = manager.state.get("vm-1")
    assert record.phase is VmPhase.FAILED
    assert "cross-device" in record.error
    assert not manager.state.in_progress("vm-1")


@pytest.mark.asyncio
async def test_recreate_after_failed_launch_boots_new_config(settings, operations, template_path):
    operations.on("jailer", "--id", command_failure("Failed to create chroot"))
    manager = VmLifecycleManager(settings, operations)
    with pytest.raises(ExternalToolFailure):
        await manager.create("vm-1", "fcnet", template_path)

    document = json.loads(template_path.read_text(encoding="utf-8"))
    document["machine-config"]["mem_size_mib"] = 2048
    template_path.write_text(json.dumps(document), encoding="utf-8")
    del operations.handlers[("jailer", "--id")]
    await manager.create("vm-1", "fcnet", template_path)

    jailed = json.loads(manager.linker.layout("vm-1").config.read_text(encoding="utf-8"))
    assert jailed["machine-config"]["mem_size_mib"] == 2048
