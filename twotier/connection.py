"""SSH session management for TwoTier.

A :class:`RemoteSession` is the transfer session of the chunked file
transfer and the channel for every post-provisioning step.  It only runs
operations from the remote agent catalogue (:mod:`twotier.agent`); there is
no way to send arbitrary script text through it.
"""

from __future__ import annotations

import logging
import socket
from enum import Enum, auto
from pathlib import Path
from typing import Any

import paramiko

from twotier.agent import build_command, encode_stdin, parse_outcome
from twotier.errors import SessionError, TwoTierError

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Custom exceptions
# ---------------------------------------------------------------------------


class UnknownHostError(TwoTierError):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can decide to trust it and
    save it via :func:`accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        """Initialise with optional host-key metadata."""
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


# ---------------------------------------------------------------------------
# Host-key policies
# ---------------------------------------------------------------------------


def _fingerprint(key: paramiko.PKey) -> str:
    return ":".join(f"{b:02x}" for b in key.get_fingerprint())


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Capture fingerprint and raise :exc:`UnknownHostError`."""
        fingerprint = _fingerprint(key)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


class _TrustingPolicy(paramiko.MissingHostKeyPolicy):
    """Saves the key of a freshly provisioned host to known_hosts and proceeds."""

    def __init__(self, known_hosts: Path) -> None:
        self._known_hosts = known_hosts

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        """Log the fingerprint and persist the key."""
        logger.warning(
            "Trusting new host key for %s (%s %s)",
            hostname,
            key.get_name(),
            _fingerprint(key),
        )
        client.get_host_keys().add(hostname, key.get_name(), key)
        accept_host_key(hostname, key, self._known_hosts)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client* without raising; socket teardown noise is irrelevant here."""
    try:
        client.close()
    except (OSError, paramiko.SSHException) as exc:
        logger.debug("Ignoring error while closing SSH client: %s", exc)


def default_known_hosts() -> Path:
    return Path.home() / ".ssh" / "known_hosts"


def accept_host_key(hostname: str, key: paramiko.PKey, known_hosts: Path | None = None) -> None:
    """Append *key* for *hostname* to *known_hosts* and save.

    Creates the file and its directory if they do not exist.
    """
    known_hosts_path = known_hosts or default_known_hosts()
    known_hosts_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(known_hosts_path)) if known_hosts_path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(known_hosts_path))
    logger.info("Saved host key for %s to %s", hostname, known_hosts_path)


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class SessionState(Enum):
    """States for the remote session lifecycle."""

    CLOSED = auto()
    OPEN = auto()
    ERROR = auto()


# ---------------------------------------------------------------------------
# RemoteSession
# ---------------------------------------------------------------------------


class RemoteSession:
    """A single SSH session to one provisioned host.

    Owned by the caller and closed explicitly (or via ``with``).  Not safe
    for concurrent use; every call blocks until its round-trip completes.
    """

    def __init__(
        self,
        host: str,
        username: str,
        password: str,
        port: int = 22,
        timeout: float = 15.0,
        command_timeout: float | None = 600.0,
        known_hosts: Path | None = None,
        trust_new_host_keys: bool = False,
    ) -> None:
        """Initialise session parameters (does NOT connect yet).

        Args:
            host: Hostname or IP of the remote machine.
            username: Account used to log in.
            password: Password for *username*.
            port: SSH port (default 22).
            timeout: Connection timeout in seconds.
            command_timeout: Per-operation channel timeout in seconds;
                ``None`` waits forever.
            known_hosts: known_hosts file to load and update.
            trust_new_host_keys: Save unknown host keys instead of raising
                :exc:`UnknownHostError`.
        """
        self.host = host
        self.port = port
        self.username = username
        self._password = password
        self.timeout = timeout
        self.command_timeout = command_timeout
        self.known_hosts = known_hosts or default_known_hosts()
        self.trust_new_host_keys = trust_new_host_keys

        self._client: paramiko.SSHClient | None = None
        self._state = SessionState.CLOSED

    def __repr__(self) -> str:
        return f"<RemoteSession {self.username}@{self.host}:{self.port} {self._state.name}>"

    def __enter__(self) -> RemoteSession:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def state(self) -> SessionState:
        return self._state

    def _set_state(self, new_state: SessionState, message: str | None = None) -> None:
        self._state = new_state
        logger.debug(
            "Session %s@%s → %s%s",
            self.username,
            self.host,
            new_state.name,
            f" ({message})" if message else "",
        )

    # ------------------------------------------------------------------
    # Open / close
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Establish the SSH connection.

        Raises:
            UnknownHostError: Host key is not in known_hosts and new keys
                are not trusted (carries fingerprint).
            paramiko.AuthenticationException: Wrong credentials.
            SessionError: Network-level failure.
        """
        if self._state == SessionState.OPEN:
            logger.debug("open() called but session to %s is already open", self.host)
            return

        logger.info("Connecting to %s@%s:%d", self.username, self.host, self.port)
        client = paramiko.SSHClient()
        if self.known_hosts.exists():
            client.load_host_keys(str(self.known_hosts))
        if self.trust_new_host_keys:
            client.set_missing_host_key_policy(_TrustingPolicy(self.known_hosts))
        else:
            client.set_missing_host_key_policy(_CapturingPolicy())

        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self._password,
                timeout=self.timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except UnknownHostError:
            _close_client_safely(client)
            self._set_state(SessionState.ERROR, "unknown host key")
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            self._set_state(SessionState.ERROR, "host key mismatch")
            raise UnknownHostError(
                f"Host key mismatch for {self.host} — check {self.known_hosts}",
                hostname=self.host,
            ) from exc
        except paramiko.AuthenticationException:
            _close_client_safely(client)
            self._set_state(SessionState.ERROR, "authentication failed")
            raise
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_client_safely(client)
            self._set_state(SessionState.ERROR, str(exc))
            raise SessionError(f"Could not connect to {self.host}:{self.port}: {exc}") from exc

        self._client = client
        self._set_state(SessionState.OPEN)
        logger.info("Connected to %s", self.host)

    def close(self) -> None:
        """Close the SSH connection.  Safe to call more than once."""
        if self._client is not None:
            _close_client_safely(self._client)
            self._client = None
            logger.info("Disconnected from %s", self.host)
        self._set_state(SessionState.CLOSED)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _require_client(self) -> paramiko.SSHClient:
        if self._state != SessionState.OPEN or self._client is None:
            raise SessionError(f"Session to {self.host} is not open (state: {self._state.name})")
        return self._client

    def invoke(self, operation: str, stdin: Any = None, **arguments: Any) -> Any:
        """Run agent *operation* with *arguments* and return its result data.

        *stdin* is the operation's payload (segment bytes or secret text),
        encoded as the operation declares.

        Raises:
            SessionError: Not open, or the transport failed mid-call.
            twotier.agent.RemoteAgentError: The operation reported failure.
            twotier.agent.AgentCommunicationError: The answer was unusable.
        """
        client = self._require_client()
        command = build_command(operation, arguments)
        payload = encode_stdin(operation, stdin)

        try:
            stdin_fh, stdout_fh, stderr_fh = client.exec_command(command, timeout=self.command_timeout)
            if payload is not None:
                stdin_fh.write(payload)
                stdin_fh.flush()
            stdin_fh.channel.shutdown_write()
            out = stdout_fh.read()
            err = stderr_fh.read()
            exit_code = stdout_fh.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            self._set_state(SessionState.ERROR, str(exc))
            logger.error("Operation %s on %s failed: %s", operation, self.host, exc)
            raise SessionError(f"Lost session to {self.host} during {operation}: {exc}") from exc

        if exit_code != 0:
            logger.debug("Operation %s on %s exited with code %d", operation, self.host, exit_code)
        return parse_outcome(out, err)
