"""TwoTier — entry point.

Configures logging, parses the command line and runs one of:

- ``deploy``: provision and configure the two tiers;
- ``send-file``: copy one file to a host with the chunked transfer;
- ``show-network``: print the saved network configuration;
- ``config`` and ``profile``: inspect and edit saved settings;
- ``forget-password``: drop a stored password from the OS keyring.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any

import paramiko

from twotier import Deployer, __version__
from twotier.cloud import AzureControlPlane
from twotier.config import DEFAULT_CONFIG, ConfigManager, DeploymentConfig
from twotier.connection import RemoteSession
from twotier.credentials import CredentialError, forget_credentials, prompt_credentials, store_credentials
from twotier.errors import TwoTierError
from twotier.netconfig import load_configuration
from twotier.transfer import send_file
from twotier.utils.path_helpers import normalize_local_path

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

log = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("azure").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="twotier", description=__doc__.splitlines()[0])
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at DEBUG level")
    parser.add_argument("--config-dir", type=Path, help="settings directory (default ~/.twotier)")
    parser.add_argument("--profile", help="saved deployment profile to apply")
    parser.add_argument("--username", help="administrator username (prompted if omitted)")
    sub = parser.add_subparsers(dest="command", required=True)

    deploy = sub.add_parser("deploy", help="provision and configure both tiers")
    deploy.add_argument("--remember", action="store_true", help="store the password in the OS keyring")

    send = sub.add_parser("send-file", help="copy a file to a host in segments")
    send.add_argument("source", type=Path)
    send.add_argument("dest")
    send.add_argument("--host", required=True)
    send.add_argument("--segment-size", type=int, help="bytes per segment")

    sub.add_parser("show-network", help="print the saved network configuration")

    config = sub.add_parser("config", help="show or change saved settings")
    config_sub = config.add_subparsers(dest="action", required=True)
    config_sub.add_parser("show", help="print every setting")
    config_get = config_sub.add_parser("get", help="print one setting")
    config_get.add_argument("key")
    config_set = config_sub.add_parser("set", help="change one setting (JSON values are decoded)")
    config_set.add_argument("key")
    config_set.add_argument("value")

    profile = sub.add_parser("profile", help="manage deployment profiles")
    profile_sub = profile.add_subparsers(dest="action", required=True)
    profile_sub.add_parser("list", help="print saved profiles")
    profile_save = profile_sub.add_parser("save", help="create or update a profile")
    profile_save.add_argument("name")
    profile_save.add_argument("overrides", nargs="*", metavar="KEY=VALUE")
    profile_delete = profile_sub.add_parser("delete", help="delete a profile")
    profile_delete.add_argument("name")

    forget = sub.add_parser("forget-password", help="remove a stored password from the OS keyring")
    forget.add_argument("user", nargs="?", help="account name (defaults to --username)")
    return parser


def _parse_value(raw: str) -> Any:
    """Decode *raw* as JSON, falling back to the plain string."""
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _check_key(key: str) -> str:
    if key not in DEFAULT_CONFIG:
        raise ValueError(f"Unknown setting: {key!r}")
    return key


def _deploy(args: argparse.Namespace, config: DeploymentConfig) -> None:
    credentials = prompt_credentials(args.username, use_keyring=config.use_keyring)
    plane = AzureControlPlane(config.subscription_id, config.affinity_group)
    result = Deployer(config, plane, credentials).run()
    if args.remember:
        store_credentials(credentials)
    print(f"web: {result.web_vm.name} http://{result.web_address}/")
    print(f"sql: {result.sql_vm.name} {result.sql_address}")


def _send_file(args: argparse.Namespace, config: DeploymentConfig) -> None:
    credentials = prompt_credentials(args.username, use_keyring=config.use_keyring)
    with RemoteSession(
        args.host,
        credentials.username,
        credentials.password,
        port=config.ssh_port,
        timeout=config.ssh_timeout,
        command_timeout=config.command_timeout,
        trust_new_host_keys=config.trust_new_host_keys,
    ) as session:
        item = send_file(
            session,
            normalize_local_path(args.source),
            args.dest,
            segment_size=args.segment_size or config.transfer_segment_size,
        )
    print(f"{item.dest_path}: {item.remote_size} bytes, modified {item.remote_modified}")


def _show_network(config: DeploymentConfig) -> None:
    network = load_configuration(config.network_config_path)
    if network is None:
        print(f"No network configuration at {config.network_config_path}")
        return
    for site in network.sites:
        print(f"{site.name}  affinity group {site.affinity_group}  {', '.join(site.address_prefixes)}")
        for subnet in site.subnets:
            print(f"    {subnet.name}  {subnet.address_prefix}")


def _config_command(args: argparse.Namespace, manager: ConfigManager) -> None:
    if args.action == "show":
        print(f"# {manager.base_dir}")
        for key, value in sorted(manager.get_all().items()):
            print(f"{key} = {json.dumps(value)}")
    elif args.action == "get":
        print(json.dumps(manager.get(_check_key(args.key))))
    else:
        manager.set(_check_key(args.key), _parse_value(args.value))


def _profile_command(args: argparse.Namespace, manager: ConfigManager) -> None:
    if args.action == "list":
        profiles = manager.get_profiles()
        if not profiles:
            print("No saved profiles")
        for profile in profiles:
            overrides = ", ".join(f"{k}={json.dumps(v)}" for k, v in profile.items() if k != "name")
            print(f"{profile['name']}  {overrides}")
    elif args.action == "save":
        profile = manager.get_profile(args.name) or {"name": args.name}
        for pair in args.overrides:
            key, sep, raw = pair.partition("=")
            if not sep:
                raise ValueError(f"Expected KEY=VALUE, got {pair!r}")
            profile[_check_key(key)] = _parse_value(raw)
        manager.save_profile(profile)
    elif not manager.delete_profile(args.name):
        raise ValueError(f"Unknown profile: {args.name!r}")


def _forget_password(args: argparse.Namespace) -> None:
    username = args.user or args.username
    if not username:
        raise CredentialError("A username is required")
    forget_credentials(username)
    print(f"Forgot stored password for {username}")


def main(argv: list[str] | None = None) -> int:
    """Bootstrap and run TwoTier; returns the process exit code."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)

    try:
        manager = ConfigManager(args.config_dir)
        if args.command == "config":
            _config_command(args, manager)
        elif args.command == "profile":
            _profile_command(args, manager)
        elif args.command == "forget-password":
            _forget_password(args)
        else:
            config = DeploymentConfig.from_manager(manager, args.profile)
            if args.command == "deploy":
                _deploy(args, config)
            elif args.command == "send-file":
                _send_file(args, config)
            else:
                _show_network(config)
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 130
    except (TwoTierError, paramiko.AuthenticationException, ValueError, OSError) as exc:
        log.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
