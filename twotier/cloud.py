"""Cloud control plane for TwoTier.

:class:`ControlPlane` is the narrow interface the rest of the package uses.
:class:`AzureControlPlane` implements it on the Azure management SDK:

- an affinity group is a resource group with the same name and location;
- a virtual network site is a virtual network tagged ``twotier-site``,
  created in its affinity group's resource group;
- a VM gets its own network security group (one rule per endpoint), a static
  public IP and a NIC in the requested subnet, and is bootstrapped with the
  OpenSSH server so :class:`twotier.connection.RemoteSession` can reach it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure.identity import DefaultAzureCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient

from twotier.errors import CloudError
from twotier.netconfig import DnsServer, NetworkConfiguration, Subnet, VirtualNetworkSite
from twotier.vmconfig import VmSpec

logger = logging.getLogger(__name__)

_SITE_TAG = "twotier-site"
_LABEL_TAG = "twotier-label"
_ROLE_TAG = "twotier-role"

_FIRST_RULE_PRIORITY = 100
_RULE_PRIORITY_STEP = 10

# language=PowerShell
_ENABLE_OPENSSH = (
    "powershell -NoProfile -ExecutionPolicy Unrestricted -Command \""
    "Add-WindowsCapability -Online -Name OpenSSH.Server~~~~0.0.1.0; "
    "Set-Service -Name sshd -StartupType Automatic; "
    "Start-Service sshd; "
    "New-NetFirewallRule -Name sshd -DisplayName 'OpenSSH Server' -Enabled True "
    "-Direction Inbound -Protocol TCP -Action Allow -LocalPort 22 -ErrorAction SilentlyContinue\""
)


@dataclass(frozen=True)
class AffinityGroup:
    name: str
    location: str
    label: str = ""


@dataclass(frozen=True)
class VirtualMachine:
    name: str
    location: str
    size: str = ""
    provisioning_state: str | None = None


class ControlPlane(Protocol):
    """Query and create operations TwoTier needs from the cloud platform.

    Queries return ``None`` when the resource is absent.  Creates raise
    :exc:`twotier.errors.CloudError` on failure.
    """

    def get_affinity_group(self, name: str) -> AffinityGroup | None: ...

    def create_affinity_group(self, name: str, location: str, label: str = "") -> AffinityGroup: ...

    def get_network_configuration(self) -> NetworkConfiguration | None: ...

    def set_network_configuration(self, config: NetworkConfiguration) -> None: ...

    def get_vm(self, name: str) -> VirtualMachine | None: ...

    def create_vm(self, spec: VmSpec, affinity_group: AffinityGroup) -> VirtualMachine: ...

    def get_vm_address(self, name: str) -> str | None: ...


def _detail(exc: HttpResponseError) -> str:
    return exc.message or str(exc)


class AzureControlPlane:
    """:class:`ControlPlane` backed by the Azure management SDK.

    Args:
        subscription_id: Azure subscription to work in.
        resource_group: Resource group holding the deployment (the
            affinity group's name).
        credential: Optional Azure SDK credential; ``DefaultAzureCredential``
            (CLI login, environment, managed identity) when omitted.
    """

    def __init__(self, subscription_id: str, resource_group: str, credential: Any = None) -> None:
        if not subscription_id:
            raise ValueError("An Azure subscription id is required (set AZURE_SUBSCRIPTION_ID)")
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self._credential = credential
        self._resource_client: ResourceManagementClient | None = None
        self._network_client: NetworkManagementClient | None = None
        self._compute_client: ComputeManagementClient | None = None

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------

    def _get_credential(self) -> Any:
        if self._credential is None:
            logger.info("Using DefaultAzureCredential for control-plane calls")
            self._credential = DefaultAzureCredential()
        return self._credential

    def _resources(self) -> ResourceManagementClient:
        """Lazy-load the ResourceManagementClient."""
        if self._resource_client is None:
            self._resource_client = ResourceManagementClient(self._get_credential(), self.subscription_id)
        return self._resource_client

    def _network(self) -> NetworkManagementClient:
        """Lazy-load the NetworkManagementClient."""
        if self._network_client is None:
            self._network_client = NetworkManagementClient(self._get_credential(), self.subscription_id)
        return self._network_client

    def _compute(self) -> ComputeManagementClient:
        """Lazy-load the ComputeManagementClient."""
        if self._compute_client is None:
            self._compute_client = ComputeManagementClient(self._get_credential(), self.subscription_id)
        return self._compute_client

    @staticmethod
    def _wait(operation: str, start: Callable[[], Any]) -> Any:
        """Start a long-running operation and block until it finishes."""
        logger.info("%s …", operation)
        try:
            return start().result()
        except HttpResponseError as exc:
            logger.error("%s failed: %s", operation, _detail(exc))
            raise CloudError(operation, _detail(exc)) from exc

    # ------------------------------------------------------------------
    # Affinity groups
    # ------------------------------------------------------------------

    def get_affinity_group(self, name: str) -> AffinityGroup | None:
        try:
            group = self._resources().resource_groups.get(name)
        except ResourceNotFoundError:
            return None
        return AffinityGroup(group.name, group.location, (group.tags or {}).get(_LABEL_TAG, ""))

    def create_affinity_group(self, name: str, location: str, label: str = "") -> AffinityGroup:
        operation = f"Creating affinity group {name} in {location}"
        logger.info("%s …", operation)
        try:
            group = self._resources().resource_groups.create_or_update(
                name, {"location": location, "tags": {_LABEL_TAG: label or name}},
            )
        except HttpResponseError as exc:
            raise CloudError(operation, _detail(exc)) from exc
        return AffinityGroup(group.name, group.location, label or name)

    # ------------------------------------------------------------------
    # Network configuration
    # ------------------------------------------------------------------

    def get_network_configuration(self) -> NetworkConfiguration | None:
        """Rebuild the network configuration from the tagged virtual networks.

        Returns ``None`` when the resource group has no TwoTier sites.
        """
        try:
            networks = list(self._network().virtual_networks.list(self.resource_group))
        except ResourceNotFoundError:
            return None

        sites = []
        dns_addresses: list[str] = []
        for vnet in networks:
            if _SITE_TAG not in (vnet.tags or {}):
                continue
            prefixes = tuple(vnet.address_space.address_prefixes or ()) if vnet.address_space else ()
            subnets = tuple(Subnet(s.name, s.address_prefix or "") for s in vnet.subnets or ())
            sites.append(VirtualNetworkSite(vnet.name, self.resource_group, prefixes, subnets))
            if vnet.dhcp_options and vnet.dhcp_options.dns_servers:
                dns_addresses.extend(a for a in vnet.dhcp_options.dns_servers if a not in dns_addresses)
        if not sites:
            return None
        return NetworkConfiguration(
            dns_servers=tuple(DnsServer(address, address) for address in dns_addresses),
            sites=tuple(sites),
        )

    def set_network_configuration(self, config: NetworkConfiguration) -> None:
        """Create or update one virtual network per site."""
        for site in config.sites:
            group = self.get_affinity_group(site.affinity_group)
            operation = f"Creating virtual network {site.name}"
            if group is None:
                raise CloudError(operation, f"affinity group {site.affinity_group!r} does not exist")
            parameters: dict[str, Any] = {
                "location": group.location,
                "address_space": {"address_prefixes": list(site.address_prefixes)},
                "subnets": [{"name": s.name, "address_prefix": s.address_prefix} for s in site.subnets],
                "tags": {_SITE_TAG: site.name},
            }
            if config.dns_servers:
                parameters["dhcp_options"] = {"dns_servers": [s.address for s in config.dns_servers]}
            self._wait(operation, lambda: self._network().virtual_networks.begin_create_or_update(
                site.affinity_group, site.name, parameters,
            ))

    # ------------------------------------------------------------------
    # Virtual machines
    # ------------------------------------------------------------------

    def get_vm(self, name: str) -> VirtualMachine | None:
        try:
            vm = self._compute().virtual_machines.get(self.resource_group, name)
        except ResourceNotFoundError:
            return None
        size = vm.hardware_profile.vm_size if vm.hardware_profile else ""
        return VirtualMachine(vm.name, vm.location, size or "", vm.provisioning_state)

    def _security_rules(self, spec: VmSpec) -> list[dict[str, Any]]:
        return [
            {
                "name": f"allow-{endpoint.name}",
                "priority": _FIRST_RULE_PRIORITY + i * _RULE_PRIORITY_STEP,
                "direction": "Inbound",
                "access": "Allow",
                "protocol": endpoint.protocol,
                "source_address_prefix": "*" if endpoint.public else "VirtualNetwork",
                "source_port_range": "*",
                "destination_address_prefix": "*",
                "destination_port_range": str(endpoint.port),
            }
            for i, endpoint in enumerate(spec.endpoints)
        ]

    def create_vm(self, spec: VmSpec, affinity_group: AffinityGroup) -> VirtualMachine:
        """Create *spec*'s network resources and VM, then enable remote management."""
        group = affinity_group.name
        location = affinity_group.location
        network = self._network()
        compute = self._compute()
        tags = {_ROLE_TAG: spec.role}

        nsg = self._wait(f"Creating security group for {spec.name}", lambda: (
            network.network_security_groups.begin_create_or_update(group, f"{spec.name}-nsg", {
                "location": location,
                "security_rules": self._security_rules(spec),
                "tags": tags,
            })
        ))
        public_ip = self._wait(f"Creating public IP for {spec.name}", lambda: (
            network.public_ip_addresses.begin_create_or_update(group, f"{spec.name}-ip", {
                "location": location,
                "sku": {"name": "Standard"},
                "public_ip_allocation_method": "Static",
                "tags": tags,
            })
        ))
        try:
            subnet = network.subnets.get(group, spec.virtual_network, spec.subnet)
        except ResourceNotFoundError as exc:
            raise CloudError(
                f"Creating VM {spec.name}",
                f"subnet {spec.subnet!r} not found in {spec.virtual_network!r}",
            ) from exc
        nic = self._wait(f"Creating network interface for {spec.name}", lambda: (
            network.network_interfaces.begin_create_or_update(group, f"{spec.name}-nic", {
                "location": location,
                "network_security_group": {"id": nsg.id},
                "ip_configurations": [{
                    "name": "ipconfig1",
                    "subnet": {"id": subnet.id},
                    "public_ip_address": {"id": public_ip.id},
                }],
                "tags": tags,
            })
        ))
        vm = self._wait(f"Creating VM {spec.name} ({spec.size})", lambda: (
            compute.virtual_machines.begin_create_or_update(group, spec.name, {
                "location": location,
                "tags": tags,
                "hardware_profile": {"vm_size": spec.size},
                "storage_profile": {
                    "image_reference": {
                        "publisher": spec.image.publisher,
                        "offer": spec.image.offer,
                        "sku": spec.image.sku,
                        "version": spec.image.version,
                    },
                    "os_disk": {
                        "create_option": "FromImage",
                        "managed_disk": {"storage_account_type": "Premium_LRS"},
                    },
                },
                "os_profile": {
                    "computer_name": spec.name,
                    "admin_username": spec.admin_username,
                    "admin_password": spec.admin_password,
                    "windows_configuration": {
                        "provision_vm_agent": True,
                        "enable_automatic_updates": True,
                    },
                },
                "network_profile": {"network_interfaces": [{"id": nic.id}]},
            })
        ))
        self._wait(f"Enabling remote management on {spec.name}", lambda: (
            compute.virtual_machine_extensions.begin_create_or_update(group, spec.name, "enable-openssh", {
                "location": location,
                "publisher": "Microsoft.Compute",
                "type_properties_type": "CustomScriptExtension",
                "type_handler_version": "1.10",
                "auto_upgrade_minor_version": True,
                "settings": {"commandToExecute": _ENABLE_OPENSSH},
            })
        ))
        logger.info("Provisioned VM %s", vm.name)
        return VirtualMachine(vm.name, vm.location, spec.size, vm.provisioning_state)

    def get_vm_address(self, name: str) -> str | None:
        """Return the VM's public IP by walking NIC → IP configuration → public IP."""
        try:
            vm = self._compute().virtual_machines.get(self.resource_group, name)
            network = self._network()
            for nic_ref in vm.network_profile.network_interfaces or []:
                nic = network.network_interfaces.get(self.resource_group, nic_ref.id.split("/")[-1])
                for ip_config in nic.ip_configurations or []:
                    if ip_config.public_ip_address:
                        pip_name = ip_config.public_ip_address.id.split("/")[-1]
                        pip = network.public_ip_addresses.get(self.resource_group, pip_name)
                        if pip.ip_address:
                            return pip.ip_address
        except ResourceNotFoundError:
            return None
        return None
