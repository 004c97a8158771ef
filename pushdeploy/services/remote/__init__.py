"""Remote execution over SSH: vault, transport, sessions."""

from .client import RemoteExecutionClient, TransportFactory
from .session import CommandResult, RemoteSession, SyncReport
from .transport import SSHTransport, Transport
from .vault import Credential, CredentialVault, EnvVault, FileVault, MemoryVault, create_vault

__all__ = [
    "CommandResult",
    "Credential",
    "CredentialVault",
    "EnvVault",
    "FileVault",
    "MemoryVault",
    "RemoteExecutionClient",
    "RemoteSession",
    "SSHTransport",
    "SyncReport",
    "Transport",
    "TransportFactory",
    "create_vault",
]
