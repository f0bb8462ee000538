from __future__ import annotations

import pytest

from vmjail.common.errors import HostOperationError, OperationInProgress
from vmjail.vm.state import VmPhase, VmStateStore


def test_claim_is_exclusive_and_released(settings):
    store = VmStateStore(settings)

    with store.claim("vm-1"):
        assert store.in_progress("vm-1")
        with pytest.raises(OperationInProgress):
            with store.claim("vm-1"):
                pass
        with store.claim("vm-2"):
            assert store.in_progress("vm-2")

    assert not store.in_progress("vm-1")
    assert not store.in_progress("vm-2")


def test_claim_released_on_error(settings):
    store = VmStateStore(settings)

    with pytest.raises(RuntimeError):
        with store.claim("vm-1"):
            raise RuntimeError("boom")

    assert not store.in_progress("vm-1")


def test_records_round_trip_through_disk(settings):
    store = VmStateStore(settings)

    store.set("vm-1", VmPhase.NETWORK_READY)
    store.set("vm-1", VmPhase.FAILED, error="cnitool add exited with status 1")

    record = VmStateStore(settings).get("vm-1")
    assert record.phase is VmPhase.FAILED
    assert record.error == "cnitool add exited with status 1"

    store.set("vm-1", VmPhase.TORN_DOWN)
    assert VmStateStore(settings).get("vm-1").error is None


def test_unreadable_record_is_ignored(settings):
    store = VmStateStore(settings)
    settings.state_dir.mkdir(parents=True)
    store.record_path("vm-1").write_text("{not json", encoding="utf-8")

    assert store.get("vm-1") is None


def test_claim_on_unusable_state_dir_is_a_host_error(settings):
    settings.state_dir.parent.mkdir(parents=True, exist_ok=True)
    settings.state_dir.write_text("not a directory", encoding="utf-8")

    with pytest.raises(HostOperationError):
        with VmStateStore(settings).claim("vm-1"):
            pass
