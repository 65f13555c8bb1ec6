"""Shared fixtures: an in-memory remote agent and control plane."""

from __future__ import annotations

import base64
import ntpath
from pathlib import Path
from typing import Any

import pytest

from twotier.agent import RemoteAgentError, build_command, encode_stdin
from twotier.cloud import AffinityGroup, VirtualMachine
from twotier.config import DeploymentConfig
from twotier.credentials import Credentials
from twotier.netconfig import NetworkConfiguration
from twotier.vmconfig import VmSpec


class FakeSession:
    """Plays the remote agent's catalogue against in-memory state.

    Every call is validated the way :class:`RemoteSession` would build it,
    then recorded in ``calls`` as ``(operation, arguments, stdin bytes)``.
    """

    def __init__(self, host: str = "fake-host", cwd: str = r"C:\Users\admin") -> None:
        self.host = host
        self.cwd = cwd
        self.files: dict[str, bytes] = {}
        self.firewall_rules: dict[str, tuple[int, str]] = {}
        self.login_mode = 1
        self.sql_logins: dict[str, str] = {}
        self.installs: list[dict[str, Any]] = []
        self.install_exit_code = 0
        self.stat_size_offset = 0
        self.calls: list[tuple[str, dict[str, Any], bytes | None]] = []
        self.closed = False
        self._failures: dict[str, int] = {}
        self._counts: dict[str, int] = {}

    def fail_on(self, operation: str, nth: int = 1) -> None:
        """Make the *nth* call of *operation* report a remote failure."""
        self._failures[operation] = nth

    def ops(self) -> list[str]:
        return [name for name, _, _ in self.calls]

    def close(self) -> None:
        self.closed = True

    def invoke(self, operation: str, stdin: Any = None, **arguments: Any) -> Any:
        build_command(operation, arguments)
        payload = encode_stdin(operation, stdin)
        self.calls.append((operation, dict(arguments), payload))

        self._counts[operation] = self._counts.get(operation, 0) + 1
        if self._failures.get(operation) == self._counts[operation]:
            raise RemoteAgentError("System.IO.IOException", "WriteError", f"{operation} failed")
        return getattr(self, "_" + operation)(payload, **arguments)

    def _prepare_destination(self, payload: bytes | None, path: str) -> str:
        resolved = ntpath.normpath(ntpath.join(self.cwd, path))
        self.files.pop(resolved, None)
        return resolved

    def _append_bytes(self, payload: bytes, path: str) -> int:
        data = base64.b64decode(payload)
        self.files[path] = self.files.get(path, b"") + data
        return len(data)

    def _stat_file(self, payload: bytes | None, path: str) -> dict[str, Any]:
        if path not in self.files:
            self.files[path] = b""
        return {
            "path": path,
            "size": len(self.files[path]) + self.stat_size_offset,
            "modified": "2026-10-17T08:00:00.0000000Z",
        }

    def _ensure_firewall_rule(self, payload: bytes | None, name: str, port: int, protocol: str) -> dict[str, Any]:
        created = name not in self.firewall_rules
        self.firewall_rules.setdefault(name, (port, protocol))
        return {"name": name, "created": created}

    def _enable_sql_mixed_mode(self, payload: bytes | None, instance: str) -> int:
        previous = self.login_mode
        self.login_mode = 2
        return previous

    def _create_sql_login(self, payload: bytes, instance: str, login: str) -> str:
        self.sql_logins.setdefault(login, payload.decode("utf-8"))
        return login

    def _install_webpi_product(
        self, payload: bytes | None, installer: str, product: str, parameters_file: str,
    ) -> int:
        self.installs.append({
            "installer": installer,
            "product": product,
            "parameters": self.files.get(parameters_file, b"").decode("utf-8"),
        })
        return self.install_exit_code

    def _remove_file(self, payload: bytes | None, path: str) -> bool:
        resolved = ntpath.normpath(ntpath.join(self.cwd, path))
        return self.files.pop(resolved, None) is not None


class FakeControlPlane:
    """In-memory :class:`twotier.cloud.ControlPlane`."""

    def __init__(self) -> None:
        self.groups: dict[str, AffinityGroup] = {}
        self.network: NetworkConfiguration | None = None
        self.vms: dict[str, VirtualMachine] = {}
        self.addresses: dict[str, str] = {}
        self.assign_addresses = True
        self.created_groups: list[str] = []
        self.created_vms: list[VmSpec] = []
        self.network_pushes: list[NetworkConfiguration] = []
        self.group_queries: list[str] = []

    def get_affinity_group(self, name: str) -> AffinityGroup | None:
        self.group_queries.append(name)
        return self.groups.get(name)

    def create_affinity_group(self, name: str, location: str, label: str = "") -> AffinityGroup:
        group = AffinityGroup(name, location, label)
        self.groups[name] = group
        self.created_groups.append(name)
        return group

    def get_network_configuration(self) -> NetworkConfiguration | None:
        return self.network

    def set_network_configuration(self, config: NetworkConfiguration) -> None:
        self.network = config
        self.network_pushes.append(config)

    def get_vm(self, name: str) -> VirtualMachine | None:
        return self.vms.get(name)

    def create_vm(self, spec: VmSpec, affinity_group: AffinityGroup) -> VirtualMachine:
        vm = VirtualMachine(spec.name, affinity_group.location, spec.size, "Succeeded")
        self.vms[spec.name] = vm
        self.created_vms.append(spec)
        if self.assign_addresses:
            self.addresses[spec.name] = f"203.0.113.{len(self.vms)}"
        return vm

    def get_vm_address(self, name: str) -> str | None:
        return self.addresses.get(name)


@pytest.fixture()
def fake_session() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def fake_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture()
def credentials() -> Credentials:
    return Credentials("azureadmin", "S3cret!pass")


@pytest.fixture()
def deploy_config(tmp_path: Path) -> DeploymentConfig:
    """A configuration whose files all live under *tmp_path*."""
    return DeploymentConfig(
        service_name="contoso",
        subscription_id="00000000-0000-0000-0000-000000000000",
        network_config_path=tmp_path / "NetworkConfig.xml",
        transfer_segment_size=1024,
    )
