"""Tests for twotier/cloud.py — AzureControlPlane against mocked SDK clients."""

from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from twotier.cloud import AffinityGroup, AzureControlPlane, VirtualMachine
from twotier.credentials import Credentials
from twotier.errors import CloudError
from twotier.netconfig import NetworkConfiguration, Subnet, VirtualNetworkSite
from twotier.vmconfig import sql_vm_spec


@pytest.fixture()
def plane() -> AzureControlPlane:
    """A control plane whose SDK clients are mocks."""
    plane = AzureControlPlane("sub-1", "twotier-ag", credential=object())
    plane._resource_client = MagicMock()
    plane._network_client = MagicMock()
    plane._compute_client = MagicMock()
    return plane


def _vnet(name: str, tags: dict | None, prefixes=("10.0.0.0/8",), subnets=(), dns=None) -> SimpleNamespace:
    return SimpleNamespace(
        name=name,
        tags=tags,
        address_space=SimpleNamespace(address_prefixes=list(prefixes)),
        subnets=[SimpleNamespace(name=n, address_prefix=p) for n, p in subnets],
        dhcp_options=SimpleNamespace(dns_servers=dns) if dns else None,
    )


class TestConstruction:
    def test_subscription_required(self) -> None:
        with pytest.raises(ValueError, match="subscription"):
            AzureControlPlane("", "twotier-ag")


class TestAffinityGroups:
    def test_missing_group(self, plane: AzureControlPlane) -> None:
        plane._resource_client.resource_groups.get.side_effect = ResourceNotFoundError("not found")
        assert plane.get_affinity_group("twotier-ag") is None

    def test_existing_group(self, plane: AzureControlPlane) -> None:
        plane._resource_client.resource_groups.get.return_value = SimpleNamespace(
            name="twotier-ag", location="westus", tags={"twotier-label": "Two tier"},
        )
        assert plane.get_affinity_group("twotier-ag") == AffinityGroup("twotier-ag", "westus", "Two tier")

    def test_create_group(self, plane: AzureControlPlane) -> None:
        plane._resource_client.resource_groups.create_or_update.return_value = SimpleNamespace(
            name="twotier-ag", location="westus",
        )
        group = plane.create_affinity_group("twotier-ag", "westus", "Two tier")
        assert group == AffinityGroup("twotier-ag", "westus", "Two tier")
        plane._resource_client.resource_groups.create_or_update.assert_called_once_with(
            "twotier-ag", {"location": "westus", "tags": {"twotier-label": "Two tier"}},
        )

    def test_create_failure_carries_detail(self, plane: AzureControlPlane) -> None:
        plane._resource_client.resource_groups.create_or_update.side_effect = HttpResponseError(
            message="LocationNotAvailableForResourceGroup",
        )
        with pytest.raises(CloudError, match="LocationNotAvailableForResourceGroup") as exc_info:
            plane.create_affinity_group("twotier-ag", "mars")
        assert exc_info.value.operation == "Creating affinity group twotier-ag in mars"


class TestNetworkConfiguration:
    def test_only_tagged_networks_are_sites(self, plane: AzureControlPlane) -> None:
        plane._network_client.virtual_networks.list.return_value = [
            _vnet("webappsubnet-vnet", {"twotier-site": "webappsubnet-vnet"}, subnets=[("webappsubnet", "10.0.0.0/8")],
                  dns=["10.1.0.4"]),
            _vnet("unrelated", None),
        ]
        config = plane.get_network_configuration()
        assert config.sites == (
            VirtualNetworkSite(
                "webappsubnet-vnet", "twotier-ag", ("10.0.0.0/8",), (Subnet("webappsubnet", "10.0.0.0/8"),),
            ),
        )
        assert [server.address for server in config.dns_servers] == ["10.1.0.4"]

    def test_no_sites(self, plane: AzureControlPlane) -> None:
        plane._network_client.virtual_networks.list.return_value = [_vnet("unrelated", {})]
        assert plane.get_network_configuration() is None

    def test_set_creates_one_network_per_site(self, plane: AzureControlPlane) -> None:
        plane._resource_client.resource_groups.get.return_value = SimpleNamespace(
            name="twotier-ag", location="westus", tags=None,
        )
        site = VirtualNetworkSite("webappsubnet-vnet", "twotier-ag", ("10.0.0.0/8",), (Subnet("web", "10.0.0.0/8"),))

        plane.set_network_configuration(NetworkConfiguration(sites=(site,)))

        begin = plane._network_client.virtual_networks.begin_create_or_update
        begin.assert_called_once()
        group, name, parameters = begin.call_args.args
        assert (group, name) == ("twotier-ag", "webappsubnet-vnet")
        assert parameters["location"] == "westus"
        assert parameters["subnets"] == [{"name": "web", "address_prefix": "10.0.0.0/8"}]
        assert parameters["tags"] == {"twotier-site": "webappsubnet-vnet"}
        begin.return_value.result.assert_called_once()

    def test_set_requires_affinity_group(self, plane: AzureControlPlane) -> None:
        plane._resource_client.resource_groups.get.side_effect = ResourceNotFoundError("not found")
        site = VirtualNetworkSite("vnet", "missing-ag", ("10.0.0.0/8",))
        with pytest.raises(CloudError, match="missing-ag"):
            plane.set_network_configuration(NetworkConfiguration(sites=(site,)))

    def test_long_running_failure(self, plane: AzureControlPlane) -> None:
        plane._resource_client.resource_groups.get.return_value = SimpleNamespace(
            name="twotier-ag", location="westus", tags=None,
        )
        begin = plane._network_client.virtual_networks.begin_create_or_update
        begin.return_value.result.side_effect = HttpResponseError(message="NetcfgInvalidSubnet")
        site = VirtualNetworkSite("vnet", "twotier-ag", ("10.0.0.0/8",))
        with pytest.raises(CloudError, match="NetcfgInvalidSubnet"):
            plane.set_network_configuration(NetworkConfiguration(sites=(site,)))


class TestVirtualMachines:
    def test_missing_vm(self, plane: AzureControlPlane) -> None:
        plane._compute_client.virtual_machines.get.side_effect = ResourceNotFoundError("not found")
        assert plane.get_vm("contoso-web") is None

    def test_create_vm(self, plane: AzureControlPlane, deploy_config) -> None:
        spec = sql_vm_spec(deploy_config, Credentials("azureadmin", "S3cret!pass"))
        compute = plane._compute_client
        compute.virtual_machines.begin_create_or_update.return_value.result.return_value = SimpleNamespace(
            name="contoso-sql", location="westus", provisioning_state="Succeeded",
        )

        vm = plane.create_vm(spec, AffinityGroup("twotier-ag", "westus"))

        assert vm == VirtualMachine("contoso-sql", "westus", spec.size, "Succeeded")
        nsg = plane._network_client.network_security_groups.begin_create_or_update.call_args.args[2]
        sources = {rule["name"]: rule["source_address_prefix"] for rule in nsg["security_rules"]}
        assert sources == {"allow-remote-management": "*", "allow-sql": "VirtualNetwork"}
        plane._network_client.subnets.get.assert_called_once_with("twotier-ag", "webappsubnet-vnet", "webappsubnet")

        parameters = compute.virtual_machines.begin_create_or_update.call_args.args[2]
        assert parameters["os_profile"]["computer_name"] == "contoso-sql"
        assert parameters["storage_profile"]["image_reference"]["offer"] == "sql2019-ws2019"
        extension = compute.virtual_machine_extensions.begin_create_or_update.call_args.args
        assert extension[:3] == ("twotier-ag", "contoso-sql", "enable-openssh")
        assert "sshd" in extension[3]["settings"]["commandToExecute"]

    def test_create_vm_missing_subnet(self, plane: AzureControlPlane, deploy_config) -> None:
        spec = sql_vm_spec(deploy_config, Credentials("azureadmin", "S3cret!pass"))
        plane._network_client.subnets.get.side_effect = ResourceNotFoundError("not found")
        with pytest.raises(CloudError, match="subnet 'webappsubnet' not found"):
            plane.create_vm(spec, AffinityGroup("twotier-ag", "westus"))
        plane._compute_client.virtual_machines.begin_create_or_update.assert_not_called()

    def test_vm_address(self, plane: AzureControlPlane) -> None:
        plane._compute_client.virtual_machines.get.return_value = SimpleNamespace(
            network_profile=SimpleNamespace(network_interfaces=[SimpleNamespace(id="/x/networkInterfaces/web-nic")]),
        )
        plane._network_client.network_interfaces.get.return_value = SimpleNamespace(
            ip_configurations=[SimpleNamespace(public_ip_address=SimpleNamespace(id="/x/publicIPAddresses/web-ip"))],
        )
        plane._network_client.public_ip_addresses.get.return_value = SimpleNamespace(ip_address="203.0.113.9")

        assert plane.get_vm_address("contoso-web") == "203.0.113.9"
        plane._network_client.network_interfaces.get.assert_called_once_with("twotier-ag", "web-nic")
        plane._network_client.public_ip_addresses.get.assert_called_once_with("twotier-ag", "web-ip")
