"""Runtime configuration for the vmjail orchestrator."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class VmJailSettings(BaseSettings):
    """Paths, binaries, and tunables shared by every vmjail component."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    firecracker_bin_path: str = env_field("/usr/bin/firecracker", "VMJAIL_FC_BIN")
    jailer_bin_path: str = env_field("/usr/bin/jailer", "VMJAIL_JAILER_BIN")
    cnitool_bin_path: str = env_field("cnitool", "VMJAIL_CNITOOL_BIN")
    jailer_uid: int = env_field(1000, "VMJAIL_JAILER_UID")
    jailer_gid: int = env_field(1000, "VMJAIL_JAILER_GID")
    jailer_cgroup_version: Optional[int] = env_field(None, "VMJAIL_JAILER_CGROUP_VERSION")
    firecracker_log_level: str = env_field("Info", "VMJAIL_FC_LOG_LEVEL")

    chroot_base: Path = env_field(Path("/srv/jailer"), "VMJAIL_CHROOT_BASE")
    netns_dir: Path = env_field(Path("/var/run/netns"), "VMJAIL_NETNS_DIR")
    network_dir: Path = env_field(Path("/var/lib/vmjail/networks"), "VMJAIL_NETWORK_DIR")
    config_dir: Path = env_field(Path("/var/lib/vmjail/configs"), "VMJAIL_CONFIG_DIR")
    state_dir: Path = env_field(Path("/var/lib/vmjail/state"), "VMJAIL_STATE_DIR")
    kernel_dir: Path = env_field(Path("/var/lib/vmjail/kernels"), "VMJAIL_KERNEL_DIR")
    rootfs_dir: Path = env_field(Path("/var/lib/vmjail/rootfs"), "VMJAIL_ROOTFS_DIR")
    template_path: Path = env_field(Path("/etc/vmjail/vm-template.json"), "VMJAIL_TEMPLATE")

    cni_bin_dir: Path = env_field(Path("/opt/cni/bin"), "VMJAIL_CNI_BIN_DIR")
    cni_conf_dir: Path = env_field(Path("/etc/cni/conf.d"), "VMJAIL_CNI_CONF_DIR")
    cni_profile: str = env_field("fcnet", "VMJAIL_CNI_PROFILE")
    cni_ifname: str = env_field("eth0", "VMJAIL_CNI_IFNAME")
    tap_name: str = env_field("tap1", "VMJAIL_TAP_NAME")

    jail_config_name: str = env_field("config.json", "VMJAIL_JAIL_CONFIG_NAME")
    jail_log_name: str = env_field("firecracker.log", "VMJAIL_JAIL_LOG_NAME")
    api_socket_name: str = env_field("run/firecracker.socket", "VMJAIL_API_SOCKET")

    shutdown_poll_interval_seconds: float = env_field(0.5, "VMJAIL_SHUTDOWN_POLL_INTERVAL")
    shutdown_timeout_seconds: float = env_field(60.0, "VMJAIL_SHUTDOWN_TIMEOUT")

    log_level: str = env_field("INFO", "VMJAIL_LOG_LEVEL")
    log_format: str = env_field("json", "VMJAIL_LOG_FORMAT")
    otel_exporter_endpoint: Optional[str] = env_field(None, "VMJAIL_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "VMJAIL_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(1.0, "VMJAIL_OTEL_SAMPLER_RATIO")

    @property
    def exec_name(self) -> str:
        return Path(self.firecracker_bin_path).name

    def netns_path(self, vm_id: str) -> Path:
        return self.netns_dir / vm_id
