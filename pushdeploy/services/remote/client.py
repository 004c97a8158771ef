"""
Remote execution client.

Hands out one ``RemoteSession`` per run. Credentials are fetched from the
vault by identifier when the session is opened, and the session is closed
on every exit path of the ``session()`` context.
"""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import TypeAlias

from pushdeploy.models.target import Target
from pushdeploy.settings import Settings, settings
from pushdeploy.utils.logger import logger

from .session import RemoteSession
from .transport import SSHTransport, Transport
from .vault import Credential, CredentialVault, create_vault

TransportFactory: TypeAlias = Callable[[Target, Credential], Transport]


class RemoteExecutionClient:
    """Opens authenticated sessions to targets.

    Args:
        vault: Credential vault; built from settings when omitted
        transport_factory: Builds a transport for a target and credential;
            defaults to paramiko SSH
        config: Settings providing timeouts and the output limit
    """

    def __init__(
        self,
        vault: CredentialVault | None = None,
        transport_factory: TransportFactory | None = None,
        config: Settings | None = None,
    ):
        self.config = config or settings
        self.vault = vault or create_vault(self.config)
        self.transport_factory = transport_factory or self._ssh_transport

    def _ssh_transport(self, target: Target, credential: Credential) -> Transport:
        return SSHTransport(
            host=target.host,
            port=target.port,
            username=target.user,
            credential=credential,
            connect_timeout=self.config.ssh_connect_timeout,
            host_key_policy=self.config.ssh_host_key_policy,
            known_hosts=self.config.ssh_known_hosts,
        )

    def open_session(self, target: Target) -> RemoteSession:
        """Create an unconnected session for ``target``.

        Raises:
            CredentialNotFoundError: If the vault has no such credential
        """
        credential = self.vault.get(target.credential_id)
        return RemoteSession(
            lambda: self.transport_factory(target, credential),
            address=target.address,
            command_timeout=self.config.command_timeout,
            output_limit=self.config.output_limit_bytes,
            connect_timeout=self.config.ssh_connect_timeout,
        )

    @asynccontextmanager
    async def session(self, target: Target) -> AsyncGenerator[RemoteSession]:
        """Session bound to one run; always closed on exit.

        Usage:
            async with client.session(target) as remote:
                await remote.execute("uptime")
        """
        remote = self.open_session(target)
        try:
            yield remote
        finally:
            await remote.close()
            logger.debug(f"Released session to {target.address}")
