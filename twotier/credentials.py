"""Interactive credential prompt, cached in the OS keyring.

The username/password pair is collected once per run and reused as the VM
administrator account and for every remote session.
"""

from __future__ import annotations

import getpass
import logging
from dataclasses import dataclass, field
from typing import Callable

import keyring
import keyring.errors

from twotier.errors import TwoTierError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "TwoTier"


class CredentialError(TwoTierError):
    """Raised when no usable username/password pair was provided."""


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str = field(repr=False)


def prompt_credentials(
    username: str | None = None,
    *,
    service: str = KEYRING_SERVICE,
    use_keyring: bool = True,
    input_func: Callable[[str], str] = input,
    getpass_func: Callable[[str], str] = getpass.getpass,
) -> Credentials:
    """Collect a username/password pair.

    The keyring is consulted first when *use_keyring* is set; the user is
    only prompted for what it does not hold.

    Raises:
        CredentialError: Empty username or password.
    """
    if not username:
        username = input_func("Administrator username: ").strip()
    if not username:
        raise CredentialError("A username is required")

    password = None
    if use_keyring:
        password = keyring.get_password(service, username)
        if password:
            logger.debug("Password for %s found in keyring", username)
    if not password:
        password = getpass_func(f"Password for {username}: ")
    if not password:
        raise CredentialError(f"A password is required for {username}")
    return Credentials(username, password)


def store_credentials(credentials: Credentials, service: str = KEYRING_SERVICE) -> None:
    """Store the password in the OS keyring for later runs."""
    keyring.set_password(service, credentials.username, credentials.password)
    logger.debug("Password stored in keyring for %s", credentials.username)


def forget_credentials(username: str, service: str = KEYRING_SERVICE) -> None:
    """Remove the stored password from the OS keyring."""
    try:
        keyring.delete_password(service, username)
    except keyring.errors.PasswordDeleteError:
        logger.debug("No stored password for %s", username)
        return
    logger.debug("Password deleted from keyring for %s", username)
