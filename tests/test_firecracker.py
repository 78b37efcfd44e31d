# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_devenv
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest
from coreason_devenv.drivers.base import BootRequest, EnvironmentHandle, PausableDriver
from coreason_devenv.drivers.firecracker import (
    MIRROR_MOUNT,
    FirecrackerClient,
    FirecrackerDriver,
    _MicroVM,
    guest_addresses,
    guest_mac,
    network_setup_commands,
    network_teardown_commands,
    veth_addresses,
)
from coreason_devenv.errors import DriverError
from coreason_devenv.models.environment import BackendKind
from coreason_devenv.models.execution import CommandResult, FileWrite


def api_client(handler: Any) -> FirecrackerClient:
    return FirecrackerClient(Path("/tmp/fc.sock"), transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_client_requests() -> None:
    seen: list[tuple[str, str, Any]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else None
        seen.append((request.method, request.url.path, body))
        if request.method == "GET":
            return httpx.Response(200, json={"state": "Running", "vmm_version": "1.7.0"})
        return httpx.Response(204)

    client = api_client(handler)

    assert (await client.describe_instance())["state"] == "Running"
    await client.pause()
    await client.create_snapshot(Path("/s/state"), Path("/s/mem"))
    await client.load_snapshot(Path("/s/state"), Path("/s/mem"))
    await client.aclose()

    assert seen[1] == ("PATCH", "/vm", {"state": "Paused"})
    assert seen[2] == (
        "PUT",
        "/snapshot/create",
        {"snapshot_type": "Full", "snapshot_path": "/s/state", "mem_file_path": "/s/mem"},
    )
    assert seen[3][2]["mem_backend"] == {"backend_type": "File", "backend_path": "/s/mem"}
    assert seen[3][2]["resume_vm"] is True


@pytest.mark.asyncio
async def test_client_fault() -> None:
    client = api_client(lambda request: httpx.Response(400, json={"fault_message": "Invalid drive path"}))

    with pytest.raises(DriverError, match="Invalid drive path"):
        await client.put_drive("rootfs", Path("/missing"))


@pytest.mark.asyncio
async def test_client_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no socket", request=request)

    with pytest.raises(DriverError, match="unreachable"):
        await api_client(handler).start_instance()


def test_guest_mac_is_stable() -> None:
    mac = guest_mac("ab12cd34")
    assert mac == guest_mac("ab12cd34")
    assert mac.startswith("02:FC:00:00:")
    assert len(mac.split(":")) == 6


def test_veth_addresses() -> None:
    assert veth_addresses(0) == ("10.200.0.1", "10.200.0.2")
    assert veth_addresses(1) == ("10.200.0.5", "10.200.0.6")
    assert veth_addresses(64) == ("10.200.1.1", "10.200.1.2")
    with pytest.raises(DriverError):
        veth_addresses(16384)


def test_network_commands() -> None:
    setup = network_setup_commands("fc-1", 2, 15002, 3000, 8080)

    assert setup[0] == ["ip", "netns", "add", "fc-1"]
    assert setup[-2][-3:] == ["DNAT", "--to-destination", "10.200.0.10:3000"]
    assert "15002" in setup[-2]
    assert any("172.16.0.2:8080" in argv for argv in setup)
    assert not any("2049" in argv for argv in setup)

    teardown = network_teardown_commands("fc-1", 2, 15002, 3000)
    assert teardown[0][3] == "-D"
    assert teardown[-1] == ["ip", "netns", "del", "fc-1"]


def test_guest_addresses_follow_subnet_prefix() -> None:
    assert guest_addresses("172.16") == ("172.16.0.2", "172.16.0.1")
    assert guest_addresses("192.168") == ("192.168.0.2", "192.168.0.1")


def test_network_commands_forward_nfs_to_host() -> None:
    """
    GIVEN a namespace for slot 2 with the mirror exported
    WHEN its setup commands are built
    THEN NFS traffic to the tap gateway is forwarded to the host end of the veth.
    """
    setup = network_setup_commands("fc-1", 2, 15002, 3000, 8080, subnet_prefix="192.168", export_mirror=True)

    in_ns = ["ip", "netns", "exec", "fc-1"]
    assert in_ns + ["ip", "addr", "add", "192.168.0.1/30", "dev", "tap0"] in setup
    nfs = [argv for argv in setup if "2049" in argv]
    assert len(nfs) == 1
    assert nfs[0][:4] == in_ns
    assert nfs[0][-1] == "10.200.0.9:2049"
    assert ["-i", "tap0", "-d", "192.168.0.1"] == nfs[0][9:13]
    assert "15002" in setup[-2]


@pytest.fixture
def executor() -> Any:
    executor = MagicMock()
    executor.run = AsyncMock(return_value=CommandResult(exit_code=0))
    return executor


@pytest.fixture
def driver(config: Any, executor: Any) -> FirecrackerDriver:
    return FirecrackerDriver(config, executor=executor)


@pytest.fixture
def vm(config: Any) -> _MicroVM:
    vm_dir = config.vm_root / "ab12cd34"
    vm_dir.mkdir(parents=True)
    return _MicroVM(
        vm_id="ab12cd34",
        vm_dir=vm_dir,
        namespace="fc-ab12cd34",
        slot=1,
        host_port=15001,
        api=AsyncMock(),
        agent=AsyncMock(),
    )


@pytest.fixture
def handle(driver: FirecrackerDriver, vm: _MicroVM) -> EnvironmentHandle:
    driver._vms["env-1"] = vm
    return EnvironmentHandle("env-1", "devenv-env-1", BackendKind.MICROVM, host_port=15001)


def request(host_port: int | None = 15001) -> BootRequest:
    return BootRequest("env-1", "devenv-env-1", "acme", "web", "main", host_port=host_port)


def test_supports_snapshots(driver: FirecrackerDriver) -> None:
    assert isinstance(driver, PausableDriver)


@pytest.mark.asyncio
async def test_boot(driver: FirecrackerDriver, vm: _MicroVM, config: Any) -> None:
    with (
        patch.object(driver, "_spawn", AsyncMock(return_value=vm)),
        patch("coreason_devenv.drivers.firecracker.copy_disk_image", AsyncMock()) as copy,
    ):
        handle = await driver.boot(request())

    assert handle.network_address == "http://localhost:15001"
    assert handle.details["vm_id"] == "ab12cd34"
    copy.assert_awaited_once()
    assert copy.await_args.args[1] == vm.vm_dir / "rootfs.ext4"
    vm.api.put_machine_config.assert_awaited_once_with(config.firecracker_vcpus, config.firecracker_mem_mib)
    boot_args = vm.api.put_boot_source.await_args.args[1]
    assert "ip=172.16.0.2::172.16.0.1:" in boot_args
    vm.api.start_instance.assert_awaited_once()
    vm.agent.wait_until_up.assert_awaited_once()


def registering_spawn(driver: FirecrackerDriver, vm: _MicroVM) -> Any:
    async def spawn(req: BootRequest) -> _MicroVM:
        driver._vms[req.environment_id] = vm
        return vm

    return spawn


@pytest.mark.asyncio
async def test_boot_mounts_host_mirror(driver: FirecrackerDriver, vm: _MicroVM, config: Any) -> None:
    """
    GIVEN a micro-VM backend with the mirror export enabled
    WHEN a VM boots
    THEN the guest mounts the host mirror read-only and clones can use it.
    """
    vm.agent.exec.return_value = CommandResult(exit_code=0)

    with (
        patch.object(driver, "_spawn", registering_spawn(driver, vm)),
        patch("coreason_devenv.drivers.firecracker.copy_disk_image", AsyncMock()),
    ):
        handle = await driver.boot(request())

    script = vm.agent.exec.await_args.args[0]
    assert "mount -t nfs4 -o ro," in script
    assert f"172.16.0.1:{config.mirror_root}" in script
    assert script.endswith(f"{MIRROR_MOUNT})")
    assert config.mirror_root.is_dir()
    assert driver.mirror_mount == MIRROR_MOUNT
    assert driver.mirror_path(handle) == MIRROR_MOUNT


@pytest.mark.asyncio
async def test_failed_mirror_mount_does_not_fail_boot(driver: FirecrackerDriver, vm: _MicroVM) -> None:
    vm.agent.exec.return_value = CommandResult(stderr="mount.nfs4: Connection refused", exit_code=32)

    with (
        patch.object(driver, "_spawn", registering_spawn(driver, vm)),
        patch("coreason_devenv.drivers.firecracker.copy_disk_image", AsyncMock()),
    ):
        handle = await driver.boot(request())

    assert handle.details["vm_id"] == "ab12cd34"
    assert driver.mirror_path(handle) is None


@pytest.mark.asyncio
async def test_mirror_export_disabled(config: Any, executor: Any, vm: _MicroVM) -> None:
    driver = FirecrackerDriver(
        config.model_copy(update={"firecracker_mirror_export": False, "vm_subnet_prefix": "192.168"}),
        executor=executor,
    )

    with (
        patch.object(driver, "_spawn", registering_spawn(driver, vm)),
        patch("coreason_devenv.drivers.firecracker.copy_disk_image", AsyncMock()),
    ):
        handle = await driver.boot(request())

    vm.agent.exec.assert_not_awaited()
    assert driver.mirror_mount is None
    assert driver.mirror_path(handle) is None
    assert "ip=192.168.0.2::192.168.0.1:" in vm.api.put_boot_source.await_args.args[1]


@pytest.mark.asyncio
async def test_boot_failure_tears_down(driver: FirecrackerDriver, vm: _MicroVM, executor: Any) -> None:
    """
    GIVEN a hypervisor that rejects the start action
    WHEN the VM boots
    THEN the VM directory and namespace are removed and DriverError is raised.
    """
    vm.api.start_instance.side_effect = DriverError("InstanceStart failed")

    async def spawn(req: BootRequest) -> _MicroVM:
        driver._vms[req.environment_id] = vm
        return vm

    with (
        patch.object(driver, "_spawn", spawn),
        patch("coreason_devenv.drivers.firecracker.copy_disk_image", AsyncMock()),
    ):
        with pytest.raises(DriverError, match="Failed to boot micro-VM"):
            await driver.boot(request())

    assert driver._vms == {}
    assert not vm.vm_dir.exists()
    assert executor.run.await_args_list[-1].args[0] == ["ip", "netns", "del", "fc-ab12cd34"]


@pytest.mark.asyncio
async def test_spawn_network_failure(driver: FirecrackerDriver, executor: Any, config: Any) -> None:
    executor.run.return_value = CommandResult(stderr="RTNETLINK answers: Operation not permitted", exit_code=2)

    with pytest.raises(DriverError, match="Operation not permitted"):
        await driver.boot(request())

    assert list(config.vm_root.iterdir()) == []
    assert driver._vms == {}


@pytest.mark.asyncio
async def test_boot_needs_port(driver: FirecrackerDriver) -> None:
    with pytest.raises(DriverError, match="host port"):
        await driver.boot(request(host_port=None))


@pytest.mark.asyncio
async def test_guest_operations(driver: FirecrackerDriver, handle: EnvironmentHandle, vm: _MicroVM) -> None:
    vm.agent.exec.return_value = CommandResult(stdout="ok", exit_code=0)
    vm.agent.write_files.return_value = []

    result = await driver.exec(handle, "ls", timeout=5.0, cwd="/app")
    await driver.write_files(handle, [FileWrite(path="a.txt", content=b"1")])
    await driver.read_file(handle, "a.txt")
    await driver.delete_files(handle, ["b.txt"])

    assert result.stdout == "ok"
    vm.agent.exec.assert_awaited_once_with("ls", timeout=5.0, cwd="/app", env=None)
    assert vm.agent.write_files.await_args.args[0][0].path == "/app/a.txt"
    vm.agent.read_file.assert_awaited_once_with("/app/a.txt")
    vm.agent.delete_files.assert_awaited_once_with(["/app/b.txt"])


@pytest.mark.asyncio
async def test_snapshot_operations(driver: FirecrackerDriver, handle: EnvironmentHandle, vm: _MicroVM) -> None:
    vm.api.describe_instance.return_value = {"state": "Paused"}

    assert await driver.get_pause_state(handle) == "Paused"
    await driver.pause(handle)
    await driver.capture(handle, Path("/s/mem"), Path("/s/state"))
    await driver.resume(handle)
    await driver.attach_devices(handle, Path("/s/rootfs.ext4"))
    await driver.load_snapshot(handle, Path("/s/mem"), Path("/s/state"))

    vm.api.pause.assert_awaited_once()
    vm.api.create_snapshot.assert_awaited_once_with(Path("/s/state"), Path("/s/mem"))
    vm.api.put_drive.assert_awaited_once_with("rootfs", Path("/s/rootfs.ext4"))
    vm.api.load_snapshot.assert_awaited_once_with(Path("/s/state"), Path("/s/mem"), resume_vm=True)
    assert driver.disk_image(handle) == vm.vm_dir / "rootfs.ext4"


@pytest.mark.asyncio
async def test_unknown_vm(driver: FirecrackerDriver) -> None:
    handle = EnvironmentHandle("env-x", "devenv-env-x", BackendKind.MICROVM)
    with pytest.raises(DriverError, match="No micro-VM"):
        await driver.exec(handle, "ls", timeout=1.0)
    await driver.destroy(handle)


@pytest.mark.asyncio
async def test_destroy(driver: FirecrackerDriver, handle: EnvironmentHandle, vm: _MicroVM, executor: Any) -> None:
    executor.run.return_value = CommandResult(stderr="Cannot find device", exit_code=1)

    await driver.destroy(handle)

    vm.api.aclose.assert_awaited_once()
    vm.agent.aclose.assert_awaited_once()
    assert executor.run.await_count == 4
    assert not vm.vm_dir.exists()
    assert driver._vms == {}
