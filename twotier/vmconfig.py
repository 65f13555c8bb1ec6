"""VM configuration for the two tiers."""

from __future__ import annotations

from dataclasses import dataclass, field

from twotier.config import DeploymentConfig
from twotier.credentials import Credentials

MAX_COMPUTER_NAME = 15

HTTP_PORT = 80
REMOTE_MANAGEMENT_PORT = 22
SQL_PORT = 1433

ROLE_WEB = "web"
ROLE_SQL = "sql"


@dataclass(frozen=True)
class Endpoint:
    """An inbound port opened on a VM.

    Public endpoints accept traffic from anywhere; private ones only from
    inside the virtual network.
    """

    name: str
    port: int
    protocol: str = "Tcp"
    public: bool = True


@dataclass(frozen=True)
class ImageReference:
    publisher: str
    offer: str
    sku: str
    version: str = "latest"

    @classmethod
    def parse(cls, urn: str) -> ImageReference:
        """Parse a ``publisher:offer:sku:version`` image URN."""
        parts = urn.split(":")
        if len(parts) != 4 or not all(parts):
            raise ValueError(f"Image must be 'publisher:offer:sku:version', got {urn!r}")
        return cls(*parts)


@dataclass(frozen=True)
class VmSpec:
    role: str
    name: str
    size: str
    image: ImageReference
    virtual_network: str
    subnet: str
    admin_username: str
    admin_password: str = field(repr=False)
    endpoints: tuple[Endpoint, ...] = ()


def _check_name(name: str) -> str:
    if not name or len(name) > MAX_COMPUTER_NAME:
        raise ValueError(
            f"VM name {name!r} must be 1-{MAX_COMPUTER_NAME} characters (Windows computer name limit)"
        )
    return name


def web_vm_spec(config: DeploymentConfig, credentials: Credentials) -> VmSpec:
    """Front end: HTTP and remote management open to the internet."""
    return VmSpec(
        role=ROLE_WEB,
        name=_check_name(config.web_name),
        size=config.web_vm_size,
        image=ImageReference.parse(config.web_image),
        virtual_network=config.virtual_network,
        subnet=config.subnet,
        admin_username=credentials.username,
        admin_password=credentials.password,
        endpoints=(
            Endpoint("http", HTTP_PORT),
            Endpoint("remote-management", REMOTE_MANAGEMENT_PORT),
        ),
    )


def sql_vm_spec(config: DeploymentConfig, credentials: Credentials) -> VmSpec:
    """Back end: remote management public, SQL reachable from the virtual network only."""
    return VmSpec(
        role=ROLE_SQL,
        name=_check_name(config.sql_name),
        size=config.sql_vm_size,
        image=ImageReference.parse(config.sql_image),
        virtual_network=config.virtual_network,
        subnet=config.subnet,
        admin_username=credentials.username,
        admin_password=credentials.password,
        endpoints=(
            Endpoint("remote-management", REMOTE_MANAGEMENT_PORT),
            Endpoint("sql", SQL_PORT, public=False),
        ),
    )
