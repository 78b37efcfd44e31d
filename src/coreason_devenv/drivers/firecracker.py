# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv

"""Micro-VM backend on Firecracker.

Each VM runs inside its own network namespace with an identical guest
address (``<vm_subnet_prefix>.0.2`` behind tap0), so a snapshot taken from one
VM restores into any other namespace without re-addressing the guest. The host
reaches a namespace over a veth pair on a per-slot /30 in 10.200.0.0/16 and
forwards the environment's host port to the guest dev server.

The host mirror cache reaches the guest over NFSv4: the namespace forwards
port 2049 on the tap gateway to the host end of its veth, and the guest mounts
``<gateway>:<mirror_root>`` read-only at ``/opt/repo-cache``. The host must
export ``mirror_root`` to 10.200.0.0/16.
"""

import asyncio
import os
import shlex
import shutil
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from uuid import uuid4

import anyio
import httpx
from loguru import logger

from coreason_devenv.agent_client import HostAgentClient
from coreason_devenv.config import DevEnvConfig
from coreason_devenv.disks import copy_disk_image
from coreason_devenv.drivers.base import BootRequest, EnvironmentDriver, EnvironmentHandle
from coreason_devenv.errors import DriverError, TransientError
from coreason_devenv.executor import LocalExecutor
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.execution import CommandResult, FileWrite

TAP_DEVICE = "tap0"
MIRROR_MOUNT = "/opt/repo-cache"
NFS_PORT = 2049
ROOTFS_NAME = "rootfs.ext4"
SOCKET_NAME = "firecracker.sock"


class FirecrackerClient:
    """Async client for the Firecracker API socket."""

    def __init__(self, socket_path: Path, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.socket_path = socket_path
        self._client = httpx.AsyncClient(
            transport=transport or httpx.AsyncHTTPTransport(uds=str(socket_path)),
            base_url="http://localhost",
            timeout=timeout,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self, method: str, path: str, body: dict[str, Any] | None = None, timeout: float | None = None
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {"json": body} if body is not None else {}
        if timeout is not None:
            kwargs["timeout"] = timeout
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise DriverError(f"Firecracker API {method} {path} unreachable: {e}") from e
        if response.status_code >= 300:
            try:
                fault = response.json().get("fault_message", response.text)
            except ValueError:
                fault = response.text
            raise DriverError(f"Firecracker API {method} {path} failed ({response.status_code}): {fault}")
        return response.json() if response.content else {}

    async def describe_instance(self) -> dict[str, Any]:
        return await self._request("GET", "/")

    async def put_machine_config(self, vcpu_count: int, mem_size_mib: int) -> None:
        await self._request("PUT", "/machine-config", {"vcpu_count": vcpu_count, "mem_size_mib": mem_size_mib})

    async def put_boot_source(self, kernel_path: Path, boot_args: str) -> None:
        await self._request(
            "PUT", "/boot-source", {"kernel_image_path": str(kernel_path), "boot_args": boot_args}
        )

    async def put_drive(self, drive_id: str, path: Path, is_root_device: bool = True) -> None:
        await self._request(
            "PUT",
            f"/drives/{drive_id}",
            {
                "drive_id": drive_id,
                "path_on_host": str(path),
                "is_root_device": is_root_device,
                "is_read_only": False,
            },
        )

    async def put_network_interface(self, iface_id: str, host_dev_name: str, guest_mac: str) -> None:
        await self._request(
            "PUT",
            f"/network-interfaces/{iface_id}",
            {"iface_id": iface_id, "host_dev_name": host_dev_name, "guest_mac": guest_mac},
        )

    async def start_instance(self) -> None:
        await self._request("PUT", "/actions", {"action_type": "InstanceStart"})

    async def pause(self) -> None:
        await self._request("PATCH", "/vm", {"state": "Paused"})

    async def resume(self) -> None:
        await self._request("PATCH", "/vm", {"state": "Resumed"})

    async def create_snapshot(self, state_path: Path, memory_path: Path) -> None:
        await self._request(
            "PUT",
            "/snapshot/create",
            {"snapshot_type": "Full", "snapshot_path": str(state_path), "mem_file_path": str(memory_path)},
            timeout=300.0,
        )

    async def load_snapshot(self, state_path: Path, memory_path: Path, resume_vm: bool = True) -> None:
        await self._request(
            "PUT",
            "/snapshot/load",
            {
                "snapshot_path": str(state_path),
                "mem_backend": {"backend_type": "File", "backend_path": str(memory_path)},
                "resume_vm": resume_vm,
            },
            timeout=120.0,
        )


def guest_mac(vm_id: str) -> str:
    digest = sum(ord(c) for c in vm_id)
    return f"02:FC:00:00:{digest & 0xFF:02x}:{(digest >> 8) & 0xFF:02x}"


def guest_addresses(subnet_prefix: str) -> tuple[str, str]:
    """Guest and tap gateway addresses, the same in every namespace."""
    return f"{subnet_prefix}.0.2", f"{subnet_prefix}.0.1"


def veth_addresses(slot: int) -> tuple[str, str]:
    """Host and namespace ends of the /30 assigned to ``slot``."""
    base = slot * 4
    if base + 3 > 0xFFFF:
        raise DriverError(f"Network slot {slot} out of range")
    hi, lo = divmod(base, 256)
    return f"10.200.{hi}.{lo + 1}", f"10.200.{hi}.{lo + 2}"


def _port_forward(action: str, chain: str, port: int, destination: str, *match: str) -> list[str]:
    """iptables DNAT rule forwarding TCP ``port`` to ``destination``."""
    rule = ["iptables", "-t", "nat", action, chain, *match]
    return rule + ["-p", "tcp", "--dport", str(port), "-j", "DNAT", "--to-destination", destination]


def network_setup_commands(
    namespace: str,
    slot: int,
    host_port: int,
    dev_port: int,
    agent_port: int,
    subnet_prefix: str = "172.16",
    export_mirror: bool = False,
) -> list[list[str]]:
    host_ip, ns_ip = veth_addresses(slot)
    guest_ip, gateway_ip = guest_addresses(subnet_prefix)
    host_veth, ns_veth = f"vh{slot}", f"vn{slot}"
    in_ns = ["ip", "netns", "exec", namespace]
    commands = [
        ["ip", "netns", "add", namespace],
        in_ns + ["ip", "tuntap", "add", "dev", TAP_DEVICE, "mode", "tap"],
        in_ns + ["ip", "addr", "add", f"{gateway_ip}/30", "dev", TAP_DEVICE],
        in_ns + ["ip", "link", "set", TAP_DEVICE, "up"],
        ["ip", "link", "add", host_veth, "type", "veth", "peer", "name", ns_veth],
        ["ip", "link", "set", ns_veth, "netns", namespace],
        ["ip", "addr", "add", f"{host_ip}/30", "dev", host_veth],
        ["ip", "link", "set", host_veth, "up"],
        in_ns + ["ip", "addr", "add", f"{ns_ip}/30", "dev", ns_veth],
        in_ns + ["ip", "link", "set", ns_veth, "up"],
        in_ns + ["ip", "link", "set", "lo", "up"],
        in_ns + ["ip", "route", "add", "default", "via", host_ip],
        in_ns + ["sysctl", "-w", "net.ipv4.ip_forward=1"],
        in_ns + ["iptables", "-t", "nat", "-A", "POSTROUTING", "-o", ns_veth, "-s", guest_ip, "-j", "MASQUERADE"],
        in_ns + _port_forward("-A", "PREROUTING", dev_port, f"{guest_ip}:{dev_port}", "-i", ns_veth),
        in_ns + _port_forward("-A", "PREROUTING", agent_port, f"{guest_ip}:{agent_port}", "-i", ns_veth),
    ]
    if export_mirror:
        commands.append(
            in_ns
            + _port_forward(
                "-A", "PREROUTING", NFS_PORT, f"{host_ip}:{NFS_PORT}", "-i", TAP_DEVICE, "-d", gateway_ip
            )
        )
    return commands + [
        _port_forward("-A", "PREROUTING", host_port, f"{ns_ip}:{dev_port}"),
        _port_forward("-A", "OUTPUT", host_port, f"{ns_ip}:{dev_port}", "-o", "lo"),
    ]


def network_teardown_commands(namespace: str, slot: int, host_port: int, dev_port: int) -> list[list[str]]:
    _, ns_ip = veth_addresses(slot)
    return [
        _port_forward("-D", "PREROUTING", host_port, f"{ns_ip}:{dev_port}"),
        _port_forward("-D", "OUTPUT", host_port, f"{ns_ip}:{dev_port}", "-o", "lo"),
        ["ip", "link", "del", f"vh{slot}"],
        ["ip", "netns", "del", namespace],
    ]


@dataclass
class _MicroVM:
    vm_id: str
    vm_dir: Path
    namespace: str
    slot: int
    host_port: int
    api: FirecrackerClient
    agent: HostAgentClient
    pid: int | None = None
    mirror_mounted: bool = False


class FirecrackerDriver(EnvironmentDriver):
    """
    Micro-VM backend. Supports pause, full-state capture and restore, so the
    snapshot manager can skip clone and install on repeat use.
    """

    kind = BackendKind.MICROVM

    def __init__(self, config: DevEnvConfig, executor: LocalExecutor | None = None):
        super().__init__(config)
        self.executor = executor or LocalExecutor()
        self._vms: dict[str, _MicroVM] = {}
        self.mirror_mount = MIRROR_MOUNT if config.firecracker_mirror_export else None

    def _vm(self, handle: EnvironmentHandle) -> _MicroVM:
        vm = self._vms.get(handle.environment_id)
        if vm is None:
            raise DriverError(f"No micro-VM registered for {handle.resource_name}")
        return vm

    def _boot_args(self) -> str:
        guest_ip, gateway_ip = guest_addresses(self.config.vm_subnet_prefix)
        args = (
            f"{self.config.firecracker_boot_args} root=/dev/vda rw "
            f"ip={guest_ip}::{gateway_ip}:255.255.255.252::eth0:off "
            f"devenv.agent_port={self.config.host_agent_port}"
        )
        if self.config.host_agent_secret:
            args += f" devenv.agent_secret={self.config.host_agent_secret}"
        return args

    async def _run_all(self, commands: list[list[str]], check: bool = True) -> None:
        for argv in commands:
            result = await self.executor.run(argv, timeout=30.0)
            if not result.ok:
                message = f"{' '.join(argv)}: {result.output.strip()}"
                if check:
                    raise DriverError(f"Host command failed: {message}")
                logger.debug(f"Ignoring failed cleanup command {message}")

    async def _spawn(self, request: BootRequest) -> _MicroVM:
        if request.host_port is None:
            raise DriverError("Micro-VMs need a host port")
        host_port = request.host_port
        slot = host_port - self.config.port_range_start
        vm_id = uuid4().hex[:8]
        vm_dir = self.config.vm_root / vm_id
        vm_dir.mkdir(parents=True, exist_ok=True)
        namespace = f"fc-{vm_id}"

        try:
            await self._run_all(
                network_setup_commands(
                    namespace,
                    slot,
                    host_port,
                    self.config.dev_port,
                    self.config.host_agent_port,
                    subnet_prefix=self.config.vm_subnet_prefix,
                    export_mirror=self.mirror_mount is not None,
                )
            )
        except DriverError:
            await self._run_all(
                network_teardown_commands(namespace, slot, host_port, self.config.dev_port), check=False
            )
            shutil.rmtree(vm_dir, ignore_errors=True)
            raise

        socket_path = vm_dir / SOCKET_NAME
        proc = await asyncio.create_subprocess_exec(
            "ip", "netns", "exec", namespace,
            self.config.firecracker_binary,
            "--api-sock", str(socket_path),
            "--log-path", str(vm_dir / "firecracker.log"),
            "--level", "Warn",
            cwd=str(vm_dir),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
            start_new_session=True,
        )

        _, ns_ip = veth_addresses(slot)
        vm = _MicroVM(
            vm_id=vm_id,
            vm_dir=vm_dir,
            namespace=namespace,
            slot=slot,
            host_port=host_port,
            api=FirecrackerClient(socket_path),
            agent=HostAgentClient(f"http://{ns_ip}:{self.config.host_agent_port}", self.config.host_agent_secret),
            pid=proc.pid,
        )
        self._vms[request.environment_id] = vm

        await self._wait_for_socket(socket_path)
        return vm

    async def _wait_for_socket(self, socket_path: Path) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.firecracker_socket_wait
        while loop.time() < deadline:
            if socket_path.exists():
                return
            await asyncio.sleep(0.1)
        raise DriverError(f"Timeout waiting for socket: {socket_path}")

    def _handle(self, request: BootRequest, vm: _MicroVM) -> EnvironmentHandle:
        return EnvironmentHandle(
            environment_id=request.environment_id,
            resource_name=request.resource_name,
            backend_kind=self.kind,
            network_address=f"http://localhost:{request.host_port}",
            host_port=request.host_port,
            details={"vm_id": vm.vm_id, "vm_dir": str(vm.vm_dir), "namespace": vm.namespace, "pid": vm.pid},
        )

    async def boot(self, request: BootRequest) -> EnvironmentHandle:
        logger.info(f"Booting micro-VM {request.resource_name}")
        vm: _MicroVM | None = None
        try:
            vm = await self._spawn(request)
            rootfs = vm.vm_dir / ROOTFS_NAME
            await copy_disk_image(self.config.firecracker_rootfs, rootfs, self.executor)

            await vm.api.put_machine_config(self.config.firecracker_vcpus, self.config.firecracker_mem_mib)
            await vm.api.put_boot_source(self.config.firecracker_kernel, self._boot_args())
            await vm.api.put_drive("rootfs", rootfs)
            await vm.api.put_network_interface("eth0", TAP_DEVICE, guest_mac(vm.vm_id))
            await vm.api.start_instance()
            await vm.agent.wait_until_up(timeout=60.0)
            if self.mirror_mount:
                await self._mount_mirror(vm)
        except (DriverError, TransientError) as e:
            logger.error(f"Failed to boot micro-VM {request.resource_name}: {e}")
            if vm is not None:
                await self.destroy(self._handle(request, vm))
            raise DriverError(f"Failed to boot micro-VM: {e}") from e

        logger.info(f"Micro-VM {vm.vm_id} running for {request.resource_name}")
        return self._handle(request, vm)

    async def _mount_mirror(self, vm: _MicroVM) -> None:
        """Mount the host mirror read-only in the guest. A failed mount leaves the VM cloning from origin."""
        self.config.mirror_root.mkdir(parents=True, exist_ok=True)
        _, gateway_ip = guest_addresses(self.config.vm_subnet_prefix)
        export = f"{gateway_ip}:{self.config.mirror_root}"
        script = (
            f"mkdir -p {MIRROR_MOUNT} && (mountpoint -q {MIRROR_MOUNT} || "
            f"mount -t nfs4 -o ro,soft,timeo=50,retrans=2 {shlex.quote(export)} {MIRROR_MOUNT})"
        )
        result = await vm.agent.exec(script, timeout=30.0)
        vm.mirror_mounted = result.ok
        if not result.ok:
            logger.warning(f"Mirror mount failed in micro-VM {vm.vm_id}: {result.output.strip()}")

    def mirror_path(self, handle: EnvironmentHandle) -> str | None:
        vm = self._vms.get(handle.environment_id)
        return MIRROR_MOUNT if vm is not None and vm.mirror_mounted else None

    async def prepare_restore(self, request: BootRequest) -> EnvironmentHandle:
        """Start a hypervisor process in its pre-boot state, ready for a snapshot load."""
        vm = await self._spawn(request)
        return self._handle(request, vm)

    async def attach_devices(self, handle: EnvironmentHandle, disk_path: Path) -> None:
        vm = self._vm(handle)
        await vm.api.put_drive("rootfs", disk_path)
        await vm.api.put_network_interface("eth0", TAP_DEVICE, guest_mac(vm.vm_id))

    async def load_snapshot(self, handle: EnvironmentHandle, memory_path: Path, state_path: Path) -> None:
        vm = self._vm(handle)
        await vm.api.load_snapshot(state_path, memory_path, resume_vm=True)
        await vm.agent.wait_until_up(timeout=30.0)

    async def get_pause_state(self, handle: EnvironmentHandle) -> str:
        info = await self._vm(handle).api.describe_instance()
        return str(info.get("state", "Unknown"))

    async def pause(self, handle: EnvironmentHandle) -> None:
        await self._vm(handle).api.pause()

    async def resume(self, handle: EnvironmentHandle) -> None:
        await self._vm(handle).api.resume()

    async def capture(self, handle: EnvironmentHandle, memory_path: Path, state_path: Path) -> None:
        await self._vm(handle).api.create_snapshot(state_path, memory_path)

    def disk_image(self, handle: EnvironmentHandle) -> Path:
        return self._vm(handle).vm_dir / ROOTFS_NAME

    async def exec(
        self,
        handle: EnvironmentHandle,
        command: str,
        timeout: float,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        return await self._vm(handle).agent.exec(command, timeout=timeout, cwd=cwd, env=env)

    async def write_files(self, handle: EnvironmentHandle, files: list[FileWrite]) -> list[dict[str, str]]:
        resolved = [f.model_copy(update={"path": self.resolve_path(f.path)}) for f in files]
        return await self._vm(handle).agent.write_files(resolved)

    async def read_file(self, handle: EnvironmentHandle, path: str) -> bytes | None:
        return await self._vm(handle).agent.read_file(self.resolve_path(path))

    async def delete_files(self, handle: EnvironmentHandle, paths: list[str]) -> list[dict[str, str]]:
        return await self._vm(handle).agent.delete_files([self.resolve_path(p) for p in paths])

    async def destroy(self, handle: EnvironmentHandle) -> None:
        vm = self._vms.pop(handle.environment_id, None)
        if vm is None:
            logger.warning(f"Attempted to destroy unknown micro-VM {handle.resource_name}")
            return

        logger.info(f"Destroying micro-VM {vm.vm_id} ({handle.resource_name})")
        if vm.pid:
            try:
                os.killpg(vm.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
        await vm.api.aclose()
        await vm.agent.aclose()
        await self._run_all(
            network_teardown_commands(vm.namespace, vm.slot, vm.host_port, self.config.dev_port), check=False
        )
        await anyio.to_thread.run_sync(lambda: shutil.rmtree(vm.vm_dir, ignore_errors=True))
