"""Exception hierarchy shared across TwoTier modules.

Every failure that should abort a provisioning run derives from
:class:`TwoTierError` so the command line can report it uniformly.
Soft mismatches are never raised; they are logged as warnings.
"""

from __future__ import annotations


class TwoTierError(Exception):
    """Base class for all fatal TwoTier errors."""


class PreconditionError(TwoTierError):
    """Raised when the run cannot start, e.g. a VM with the target name exists."""


class CloudError(TwoTierError):
    """Raised when a control-plane create/update call fails.

    Carries the name of the operation and the last error detail reported by
    the platform.
    """

    def __init__(self, operation: str, detail: str) -> None:
        """Initialise with the failed *operation* and the platform's *detail*."""
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class SessionError(TwoTierError):
    """Raised when a remote session is used while not open, or drops mid-call."""


class RemoteSetupError(TwoTierError):
    """Raised when a post-provisioning step reports failure."""
