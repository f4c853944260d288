"""Shell transports used to configure machines."""

from tsunami.transport.base import Session, Transport
from tsunami.transport.ssh import SSHSession, SSHTransport

__all__ = [
    "Session",
    "Transport",
    "SSHSession",
    "SSHTransport",
]
