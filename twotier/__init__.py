"""TwoTier — main Deployer class and step sequencing."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from twotier.cloud import AffinityGroup, ControlPlane, VirtualMachine
from twotier.config import DeploymentConfig
from twotier.connection import RemoteSession
from twotier.convergence import ensure_affinity_group, ensure_network_site
from twotier.credentials import Credentials
from twotier.errors import CloudError, PreconditionError
from twotier.netconfig import VirtualNetworkSite
from twotier.remote_setup import configure_sql_server, configure_web_server, install_web_application
from twotier.transfer import ProgressCallback, TransferItem
from twotier.vmconfig import VmSpec, sql_vm_spec, web_vm_spec

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str], RemoteSession]


@dataclass
class DeploymentResult:
    """What a completed run provisioned."""

    affinity_group: AffinityGroup
    site: VirtualNetworkSite
    sql_vm: VirtualMachine
    web_vm: VirtualMachine
    sql_address: str
    web_address: str
    transfers: list[TransferItem] = field(default_factory=list)


class Deployer:
    """Runs the provisioning sequence for one two-tier deployment.

    Steps run strictly one after another; the first failure aborts the run
    and leaves whatever was already provisioned in place.
    """

    def __init__(
        self,
        config: DeploymentConfig,
        plane: ControlPlane,
        credentials: Credentials,
        session_factory: SessionFactory | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        """Initialise the deployer.

        Args:
            config: The deployment's configuration.
            plane: Control plane used for every cloud call.
            credentials: VM administrator account, also used to log in.
            session_factory: Returns an open session for a host address;
                defaults to an SSH :class:`RemoteSession`.
            on_progress: Forwarded to every file transfer.
        """
        self._config = config
        self._plane = plane
        self._credentials = credentials
        self._session_factory = session_factory or self._open_session
        self._on_progress = on_progress

    def _open_session(self, host: str) -> RemoteSession:
        session = RemoteSession(
            host,
            self._credentials.username,
            self._credentials.password,
            port=self._config.ssh_port,
            timeout=self._config.ssh_timeout,
            command_timeout=self._config.command_timeout,
            trust_new_host_keys=self._config.trust_new_host_keys,
        )
        session.open()
        return session

    def check_preconditions(self) -> tuple[VmSpec, VmSpec]:
        """Fail before touching anything if the run cannot succeed.

        Returns the (SQL, web) VM specs, already validated.

        Raises:
            PreconditionError: A VM name or image is invalid, a target VM
                already exists, or the configured package installer is
                missing.
        """
        try:
            specs = (
                sql_vm_spec(self._config, self._credentials),
                web_vm_spec(self._config, self._credentials),
            )
        except ValueError as exc:
            raise PreconditionError(str(exc)) from exc
        for spec in specs:
            if self._plane.get_vm(spec.name) is not None:
                raise PreconditionError(f"VM {spec.name} already exists — choose another service name")
        installer = self._config.webapp_installer
        if installer is not None and not installer.is_file():
            raise PreconditionError(f"Package installer not found: {installer}")
        return specs

    def _address_of(self, vm: VirtualMachine) -> str:
        address = self._plane.get_vm_address(vm.name)
        if not address:
            raise CloudError(f"Resolving address of {vm.name}", "VM has no public IP address")
        return address

    def run(self) -> DeploymentResult:
        """Provision and configure both tiers."""
        config = self._config
        logger.info("Deploying %s to %s", config.service_name, config.location)
        sql_spec, web_spec = self.check_preconditions()

        group = ensure_affinity_group(self._plane, config.affinity_group, config.location)
        site = ensure_network_site(
            self._plane,
            config.network_config_path,
            config.virtual_network,
            group.name,
            config.subnet,
            (config.address_prefix,),
            config.subnet_prefix,
        )

        sql_vm = self._plane.create_vm(sql_spec, group)
        web_vm = self._plane.create_vm(web_spec, group)
        sql_address = self._address_of(sql_vm)
        web_address = self._address_of(web_vm)

        session = self._session_factory(sql_address)
        try:
            configure_sql_server(session, config, self._credentials)
        finally:
            session.close()

        transfers: list[TransferItem] = []
        session = self._session_factory(web_address)
        try:
            configure_web_server(session, config)
            if config.webapp_installer is not None:
                transfers = install_web_application(
                    session, config, sql_vm.name, self._credentials, self._on_progress,
                )
            else:
                logger.warning("No package installer configured — skipping web application install")
        finally:
            session.close()

        logger.info("Deployment complete: web %s (%s), sql %s (%s)", web_vm.name, web_address, sql_vm.name, sql_address)
        return DeploymentResult(group, site, sql_vm, web_vm, sql_address, web_address, transfers)
