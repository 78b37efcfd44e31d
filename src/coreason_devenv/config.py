# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from coreason_devenv.integrations.vault import VaultIntegrator
from coreason_devenv.models.environment import BackendKind, EnvironmentStatus, HealthCheckPolicy


class VaultSettingsSource(PydanticBaseSettingsSource):
    """
    Custom Pydantic Settings Source that reads secrets from Vault.
    """

    mapping = {
        "github_token": "GITHUB_TOKEN",
        "e2b_api_key": "E2B_API_KEY",
        "host_agent_secret": "HOST_AGENT_SECRET",
    }

    def get_field_value(self, field: Any, field_name: str) -> tuple[Any, str, bool]:
        # Unused: __call__ returns the full dict.
        return None, field_name, False  # pragma: no cover

    def __call__(self) -> dict[str, Any]:
        vault = VaultIntegrator()
        secrets: dict[str, Any] = {}

        for field, key in self.mapping.items():
            val = vault.get_secret(key)
            if val:
                secrets[field] = val

        return secrets


def _default_status_timeouts() -> dict[EnvironmentStatus, float]:
    return {
        EnvironmentStatus.REQUESTED: 60.0,
        EnvironmentStatus.RESTORING: 120.0,
        EnvironmentStatus.BOOTING: 60.0,
        EnvironmentStatus.CLONING: 5 * 60.0,
        EnvironmentStatus.INSTALLING: 15 * 60.0,
        EnvironmentStatus.STARTING: 2 * 60.0,
        EnvironmentStatus.STOPPING: 60.0,
    }


class DevEnvConfig(BaseSettings):
    """
    Configuration for the environment orchestrator.
    """

    default_backend: BackendKind = BackendKind.CONTAINER

    # Host filesystem layout
    data_dir: Path = Path("/var/lib/coreason-devenv")
    mirror_dir_name: str = "repo-cache"
    snapshot_dir_name: str = "snapshots"
    vm_dir_name: str = "vms"

    # Port allocation
    port_range_start: int = 10000
    port_range_end: int = 20000

    # Workload inside the environment
    workdir: str = "/app"
    install_command: str = "pnpm install"
    dev_command: str = "pnpm run dev"
    dev_port: int = 3000
    dev_log_path: str = "/tmp/dev-server.log"

    # Command timeouts (seconds)
    clone_timeout: float = 5 * 60.0
    install_timeout: float = 15 * 60.0
    start_timeout: float = 10.0
    exec_timeout: float = 60.0
    probe_timeout: float = 5.0

    # Health check after the dev server is launched
    health_check_attempts: int = 60
    health_check_interval: float = 0.5
    health_check_policy: HealthCheckPolicy = HealthCheckPolicy.DEGRADE_TO_READY

    # Failure diagnostics
    log_tail_lines: int = 100
    callback_log_max_chars: int = 32000

    # Snapshots and checkpoints
    snapshots_enabled: bool = True
    checkpoints_enabled: bool = True
    snapshot_lock_stale_after: float = 5 * 60.0
    snapshot_pause_settle: float = 0.5
    snapshot_staleness: float = 24 * 3600.0
    snapshot_max_age: float = 7 * 24 * 3600.0

    # Repository mirror cache
    mirror_lock_wait: float = 120.0
    mirror_retention: float = 7 * 24 * 3600.0

    # Lifecycle supervision
    provisioning_ceiling: float = 30 * 60.0
    status_timeouts: dict[EnvironmentStatus, float] = Field(default_factory=_default_status_timeouts)
    idle_timeout: float = 300.0  # 5 minutes
    reaper_interval: float = 60.0  # Check every minute

    # Container backend
    docker_image: str = "node:24-slim"
    docker_mem_limit: str = "4g"
    docker_cpu_limit: float = 2.0
    docker_network: str | None = None

    # Remote sandbox backend
    e2b_api_key: str | None = None
    e2b_template: str = "base"
    e2b_sandbox_timeout: int = 3600

    # Micro-VM backend
    firecracker_binary: str = "firecracker"
    firecracker_kernel: Path = Path("/var/lib/coreason-devenv/images/vmlinux")
    firecracker_rootfs: Path = Path("/var/lib/coreason-devenv/images/rootfs.ext4")
    firecracker_boot_args: str = "console=ttyS0 reboot=k panic=1 pci=off"
    firecracker_vcpus: int = 2
    firecracker_mem_mib: int = 2048
    firecracker_version: str = "1.7.0"
    firecracker_socket_wait: float = 5.0
    vm_subnet_prefix: str = "172.16"
    # Guests mount mirror_root over NFSv4; the host must export it to 10.200.0.0/16.
    firecracker_mirror_export: bool = True
    host_agent_port: int = 8080
    host_agent_secret: str | None = None

    # Source control
    github_token: str | None = None
    git_host: str = "github.com"

    # Callback delivery (host side)
    callback_url: str | None = None
    callback_attempts: int = 5
    callback_backoff: float = 0.5
    callback_backoff_max: float = 8.0
    status_flush_timeout: float = 10.0

    # Callback gateway server, run inside the orchestrator process
    gateway_enabled: bool = True
    gateway_host: str = "0.0.0.0"
    gateway_port: int = 8787

    model_config = SettingsConfigDict(
        env_prefix="COREASON_DEVENV_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def mirror_root(self) -> Path:
        return self.data_dir / self.mirror_dir_name

    @property
    def snapshot_root(self) -> Path:
        return self.data_dir / self.snapshot_dir_name

    @property
    def vm_root(self) -> Path:
        return self.data_dir / self.vm_dir_name

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            VaultSettingsSource(settings_cls),
            file_secret_settings,
        )
