"""Post-provisioning configuration of the two tiers.

Each step runs catalogue operations over an open :class:`RemoteSession`:

- back end: mixed-mode SQL authentication, a SQL login for the web
  application and a firewall rule for SQL traffic;
- front end: a firewall rule for HTTP and the web application itself,
  installed by uploading the package installer and its parameters file with
  the chunked transfer and running the catalogue entry.
"""

from __future__ import annotations

import logging
import tempfile
from pathlib import Path

from twotier.config import DeploymentConfig
from twotier.credentials import Credentials
from twotier.errors import RemoteSetupError
from twotier.transfer import AgentSession, ProgressCallback, TransferItem, send_file
from twotier.utils.path_helpers import remote_join
from twotier.vmconfig import HTTP_PORT, SQL_PORT

logger = logging.getLogger(__name__)

SQL_FIREWALL_RULE = "TwoTier SQL Server"
HTTP_FIREWALL_RULE = "TwoTier HTTP"

_PARAMETERS_FILE = "webapp.app"


def open_firewall_port(session: AgentSession, name: str, port: int, protocol: str = "TCP") -> bool:
    """Allow inbound *port*; returns True if the rule had to be created."""
    result = session.invoke("ensure_firewall_rule", name=name, port=port, protocol=protocol)
    created = bool(result["created"])
    logger.info("Firewall rule %r for %s/%d %s", name, protocol, port, "created" if created else "already present")
    return created


def configure_sql_server(session: AgentSession, config: DeploymentConfig, credentials: Credentials) -> None:
    """Enable mixed-mode authentication, add the web app's login and open the SQL port."""
    previous = session.invoke("enable_sql_mixed_mode", instance=config.sql_instance)
    if previous == 2:
        logger.info("SQL Server %s already uses mixed-mode authentication", config.sql_instance)
    else:
        logger.info("Switched SQL Server %s to mixed-mode authentication", config.sql_instance)

    session.invoke(
        "create_sql_login",
        stdin=credentials.password,
        instance=config.sql_instance,
        login=config.sql_login,
    )
    logger.info("SQL login %s is present", config.sql_login)
    open_firewall_port(session, SQL_FIREWALL_RULE, SQL_PORT)


def configure_web_server(session: AgentSession, config: DeploymentConfig) -> None:
    open_firewall_port(session, HTTP_FIREWALL_RULE, HTTP_PORT)


def render_app_parameters(config: DeploymentConfig, sql_host: str, credentials: Credentials) -> str:
    """Return the installer's application parameters file.

    One ``name=value`` pair per line, as the package installer expects for
    ``/Application:<product>@<file>``.
    """
    values = [
        ("Application Path", config.webapp_site_path),
        ("Database Server", sql_host),
        ("Database Name", config.webapp_database),
        ("Database Username", config.sql_login),
        ("Database Password", credentials.password),
        ("Database Administrator", credentials.username),
        ("Database Administrator Password", credentials.password),
    ]
    return "".join(f"{name}={value}\r\n" for name, value in values)


def install_web_application(
    session: AgentSession,
    config: DeploymentConfig,
    sql_host: str,
    credentials: Credentials,
    on_progress: ProgressCallback | None = None,
) -> list[TransferItem]:
    """Upload the installer and its parameters, then install the catalogue entry.

    Returns the two completed transfers (installer, parameters file).

    Raises:
        RemoteSetupError: No installer configured, or it exited non-zero.
    """
    installer = config.webapp_installer
    if installer is None:
        raise RemoteSetupError("No package installer configured (set 'webapp_installer')")

    transfers = [
        send_file(
            session,
            installer,
            remote_join(config.remote_staging_dir, installer.name),
            segment_size=config.transfer_segment_size,
            on_progress=on_progress,
        ),
    ]
    # The parameters file carries the administrator password.
    parameters_dest = remote_join(config.remote_staging_dir, _PARAMETERS_FILE)
    try:
        with tempfile.TemporaryDirectory(prefix="twotier-") as tmp:
            parameters = Path(tmp) / _PARAMETERS_FILE
            parameters.write_text(render_app_parameters(config, sql_host, credentials), encoding="utf-8")
            transfers.append(send_file(
                session,
                parameters,
                parameters_dest,
                segment_size=config.transfer_segment_size,
                on_progress=on_progress,
            ))

        logger.info("Installing %s to %s", config.webapp_product, config.webapp_site_path)
        exit_code = session.invoke(
            "install_webpi_product",
            installer=transfers[0].dest_path,
            product=config.webapp_product,
            parameters_file=transfers[1].dest_path,
        )
    finally:
        if session.invoke("remove_file", path=parameters_dest):
            logger.debug("Removed %s", parameters_dest)
    if exit_code != 0:
        raise RemoteSetupError(f"Installing {config.webapp_product} failed with exit code {exit_code}")
    logger.info("%s installed", config.webapp_product)
    return transfers
