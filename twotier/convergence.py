"""Check-then-create convergence of shared cloud resources.

Both helpers query first and create only what is missing.  A resource that
exists with different attributes is reported with a warning and left alone.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from twotier.cloud import AffinityGroup, ControlPlane
from twotier.netconfig import (
    DEFAULT_ADDRESS_PREFIX,
    VirtualNetworkSite,
    blank_configuration,
    merge_site,
    save_configuration,
)

logger = logging.getLogger(__name__)


def ensure_affinity_group(
    plane: ControlPlane,
    name: str,
    location: str,
    label: str | None = None,
) -> AffinityGroup:
    """Return affinity group *name*, creating it in *location* if absent.

    An existing group in another location is kept as-is (warning only).
    """
    existing = plane.get_affinity_group(name)
    if existing is None:
        logger.info("Affinity group %s not found — creating it in %s", name, location)
        return plane.create_affinity_group(name, location, label or name)

    if existing.location != location:
        logger.warning(
            "Affinity group %s already exists in %s, not %s — using it unchanged",
            name,
            existing.location,
            location,
        )
    else:
        logger.info("Affinity group %s already exists in %s", name, location)
    return existing


def ensure_network_site(
    plane: ControlPlane,
    config_path: Path,
    site_name: str,
    affinity_group: str,
    subnet_name: str,
    address_prefixes: Iterable[str] = (DEFAULT_ADDRESS_PREFIX,),
    subnet_prefix: str | None = None,
) -> VirtualNetworkSite:
    """Make sure virtual network site *site_name* exists with subnet *subnet_name*.

    Fetches the current configuration (bootstrapping a blank one when there
    is none), merges the site into it, saves the result to *config_path* and
    pushes it back unless nothing changed.
    """
    current = plane.get_network_configuration()
    if current is None:
        logger.info("No network configuration exists yet — starting from a blank one")
        current = blank_configuration()

    desired = merge_site(current, site_name, affinity_group, subnet_name, address_prefixes, subnet_prefix)
    save_configuration(desired, config_path)
    site = desired.find_site(site_name)

    if desired == current:
        logger.info("Virtual network site %s is already up to date", site_name)
        return site

    action = "Updating" if current.find_site(site_name) else "Adding"
    logger.info(
        "%s virtual network site %s (affinity group %s, subnet %s %s)",
        action,
        site_name,
        affinity_group,
        subnet_name,
        site.find_subnet(subnet_name).address_prefix,
    )
    plane.set_network_configuration(desired)
    return site
