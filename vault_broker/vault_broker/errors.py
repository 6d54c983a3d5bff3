"""Broker error taxonomy.

Vault returns multi-line error text, which does not mix well with
line-oriented broker logs.  Every :class:`BrokerError` collapses embedded
newlines into single spaces so the message is safe to log and to return to
the platform verbatim.
"""

from __future__ import annotations


def collapse_newlines(text: str) -> str:
    """Replace every newline (and CR) in *text* with a single space."""
    return text.replace("\r\n", " ").replace("\n", " ").replace("\r", " ")


class BrokerError(Exception):
    """Base class for errors surfaced by broker operations."""

    def __init__(self, message: str) -> None:
        super().__init__(collapse_newlines(message))

    @property
    def message(self) -> str:
        return str(self)


class InstanceNotFoundError(BrokerError):
    """Raised when an operation references an unknown service instance."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"no instance exists with ID {instance_id}")
        self.instance_id = instance_id


class BindingNotFoundError(BrokerError):
    """Raised when an unbind references a binding with no durable record."""

    def __init__(self, instance_id: str, binding_id: str) -> None:
        super().__init__(f"no binding exists with ID {binding_id} for instance {instance_id}")
        self.instance_id = instance_id
        self.binding_id = binding_id


class InstanceConflictError(BrokerError):
    """Raised when provisioning an instance ID already bound to another org/space."""


class BindingConflictError(BrokerError):
    """Raised when a binding ID is already registered under another instance."""


class RecordDecodeError(BrokerError):
    """Raised when a durable record cannot be decoded."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"failed to decode record at {path}: {reason}")
        self.path = path


class BrokerNotReadyError(BrokerError):
    """Raised when an operation arrives before startup recovery has finished."""

    def __init__(self) -> None:
        super().__init__("broker is not running")
