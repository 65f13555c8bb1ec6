"""Typed network configuration model.

The network topology document is parsed into frozen dataclasses, changed
with pure functions and serialised back.  Only the parts TwoTier manages are
modelled: DNS servers and virtual network sites with their address space and
subnets.  Anything else in a loaded document is not carried over.

Document shape::

    <NetworkConfiguration xmlns="http://schemas.microsoft.com/ServiceHosting/2011/07/NetworkConfiguration">
      <VirtualNetworkConfiguration>
        <Dns><DnsServers><DnsServer name="..." IPAddress="..."/></DnsServers></Dns>
        <VirtualNetworkSites>
          <VirtualNetworkSite name="..." AffinityGroup="...">
            <AddressSpace><AddressPrefix>10.0.0.0/8</AddressPrefix></AddressSpace>
            <Subnets><Subnet name="..."><AddressPrefix>...</AddressPrefix></Subnet></Subnets>
          </VirtualNetworkSite>
        </VirtualNetworkSites>
      </VirtualNetworkConfiguration>
    </NetworkConfiguration>
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Iterable
from xml.etree.ElementTree import Element, ParseError, SubElement, XML, indent, register_namespace, tostring

from twotier.errors import TwoTierError

logger = logging.getLogger(__name__)

NAMESPACE = "http://schemas.microsoft.com/ServiceHosting/2011/07/NetworkConfiguration"
DEFAULT_ADDRESS_PREFIX = "10.0.0.0/8"

_NS = {"n": NAMESPACE}

register_namespace("", NAMESPACE)


class NetworkConfigError(TwoTierError):
    """Raised when a network configuration document cannot be parsed."""


@dataclass(frozen=True)
class Subnet:
    name: str
    address_prefix: str


@dataclass(frozen=True)
class DnsServer:
    name: str
    address: str


@dataclass(frozen=True)
class VirtualNetworkSite:
    """One virtual network: its address space and subnets."""

    name: str
    affinity_group: str
    address_prefixes: tuple[str, ...] = ()
    subnets: tuple[Subnet, ...] = ()

    def find_subnet(self, name: str) -> Subnet | None:
        for subnet in self.subnets:
            if subnet.name == name:
                return subnet
        return None


@dataclass(frozen=True)
class NetworkConfiguration:
    """The whole network topology document."""

    dns_servers: tuple[DnsServer, ...] = ()
    sites: tuple[VirtualNetworkSite, ...] = ()

    def find_site(self, name: str) -> VirtualNetworkSite | None:
        """Return the site called *name*, or ``None``."""
        for site in self.sites:
            if site.name == name:
                return site
        return None


def blank_configuration() -> NetworkConfiguration:
    """Return an empty configuration, used when none exists yet."""
    return NetworkConfiguration()


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def merge_site(
    config: NetworkConfiguration,
    site_name: str,
    affinity_group: str,
    subnet_name: str,
    address_prefixes: Iterable[str] = (DEFAULT_ADDRESS_PREFIX,),
    subnet_prefix: str | None = None,
) -> NetworkConfiguration:
    """Return *config* with site *site_name* inserted or updated.

    A new site is appended after existing ones.  An existing site gets the
    given affinity group and address space; subnet *subnet_name* is updated
    in place or appended, other subnets are kept.  The subnet prefix defaults
    to the first address prefix.  *config* itself is never modified.
    """
    prefixes = tuple(address_prefixes)
    if not prefixes:
        raise ValueError("At least one address prefix is required")
    subnet = Subnet(subnet_name, subnet_prefix or prefixes[0])

    existing = config.find_site(site_name)
    if existing is None:
        site = VirtualNetworkSite(site_name, affinity_group, prefixes, (subnet,))
        return replace(config, sites=config.sites + (site,))

    if existing.find_subnet(subnet_name) is None:
        subnets = existing.subnets + (subnet,)
    else:
        subnets = tuple(subnet if s.name == subnet_name else s for s in existing.subnets)
    site = replace(existing, affinity_group=affinity_group, address_prefixes=prefixes, subnets=subnets)
    return replace(config, sites=tuple(site if s.name == site_name else s for s in config.sites))


# ---------------------------------------------------------------------------
# XML codec
# ---------------------------------------------------------------------------


def _tag(name: str) -> str:
    return f"{{{NAMESPACE}}}{name}"


def parse_configuration(xml_text: str | bytes) -> NetworkConfiguration:
    """Parse a network configuration document.

    Raises:
        NetworkConfigError: Malformed XML or an unexpected root element.
    """
    try:
        root = XML(xml_text)
    except ParseError as exc:
        raise NetworkConfigError(f"Cannot parse network configuration: {exc}") from exc
    if root.tag != _tag("NetworkConfiguration"):
        raise NetworkConfigError(f"Unexpected root element {root.tag!r}")

    dns_servers = tuple(
        DnsServer(e.get("name", ""), e.get("IPAddress", ""))
        for e in root.iterfind("n:VirtualNetworkConfiguration/n:Dns/n:DnsServers/n:DnsServer", _NS)
    )
    sites = []
    for e in root.iterfind("n:VirtualNetworkConfiguration/n:VirtualNetworkSites/n:VirtualNetworkSite", _NS):
        prefixes = tuple(
            (p.text or "").strip() for p in e.iterfind("n:AddressSpace/n:AddressPrefix", _NS)
        )
        subnets = tuple(
            Subnet(s.get("name", ""), (s.findtext("n:AddressPrefix", "", _NS)).strip())
            for s in e.iterfind("n:Subnets/n:Subnet", _NS)
        )
        sites.append(VirtualNetworkSite(e.get("name", ""), e.get("AffinityGroup", ""), prefixes, subnets))
    return NetworkConfiguration(dns_servers, tuple(sites))


def serialize_configuration(config: NetworkConfiguration) -> str:
    """Return *config* as an XML document string."""
    root = Element(_tag("NetworkConfiguration"))
    vnet_config = SubElement(root, _tag("VirtualNetworkConfiguration"))
    dns = SubElement(vnet_config, _tag("Dns"))
    if config.dns_servers:
        servers = SubElement(dns, _tag("DnsServers"))
        for server in config.dns_servers:
            SubElement(servers, _tag("DnsServer"), {"name": server.name, "IPAddress": server.address})
    sites = SubElement(vnet_config, _tag("VirtualNetworkSites"))
    for site in config.sites:
        site_element = SubElement(sites, _tag("VirtualNetworkSite"), {
            "name": site.name,
            "AffinityGroup": site.affinity_group,
        })
        address_space = SubElement(site_element, _tag("AddressSpace"))
        for prefix in site.address_prefixes:
            SubElement(address_space, _tag("AddressPrefix")).text = prefix
        subnets = SubElement(site_element, _tag("Subnets"))
        for subnet in site.subnets:
            subnet_element = SubElement(subnets, _tag("Subnet"), {"name": subnet.name})
            SubElement(subnet_element, _tag("AddressPrefix")).text = subnet.address_prefix
    indent(root)
    return '<?xml version="1.0" encoding="utf-8"?>\n' + tostring(root, encoding="unicode") + "\n"


def load_configuration(path: Path) -> NetworkConfiguration | None:
    """Load the document at *path*, or return ``None`` if it does not exist."""
    if not path.exists():
        return None
    return parse_configuration(path.read_bytes())


def save_configuration(config: NetworkConfiguration, path: Path) -> None:
    """Write *config* to *path* atomically (write-to-temp, then rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    try:
        tmp.write_text(serialize_configuration(config), encoding="utf-8")
        tmp.replace(path)
    except OSError as exc:
        logger.error("Failed to write %s: %s", path, exc)
        raise
    logger.debug("Network configuration saved to %s (%d site(s))", path, len(config.sites))
