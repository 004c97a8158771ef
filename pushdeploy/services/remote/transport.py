"""
Blocking SSH transport built on paramiko.

``SSHTransport`` owns one paramiko client (and a lazily opened SFTP
channel) for one run. Every method blocks; ``RemoteSession`` runs them in
worker threads and closes the transport to unblock a call that has to be
abandoned.

Errors are translated at this boundary: connection and handshake problems
become ``TransientNetworkError``, rejected credentials and host keys become
``AuthError``.
"""

import shlex
import socket
import time
from pathlib import Path
from typing import Protocol

import paramiko

from pushdeploy.exceptions.domain import (
    AuthError,
    RemoteCommandTimeout,
    SyncFailure,
    TransientNetworkError,
)
from pushdeploy.settings import HostKeyPolicy
from pushdeploy.utils.file_patterns import FileEntry
from pushdeploy.utils.logger import logger

from .vault import Credential

RECV_CHUNK = 32 * 1024
SHA256_HEX_LENGTH = 64
TMP_SUFFIX = ".pushdeploy-tmp"


class Transport(Protocol):
    """Blocking primitives the remote session is built on."""

    @property
    def is_active(self) -> bool: ...

    def connect(self) -> None: ...

    def exec(self, command: str, timeout: float, limit: int) -> tuple[int, bytes, bool]: ...

    def manifest(
        self, root: str, exclude: tuple[str, ...], timeout: float
    ) -> dict[str, FileEntry]: ...

    def put(self, local_path: Path, remote_path: str, mode: int) -> None: ...

    def close(self) -> None: ...


class _RejectUnknownHost(paramiko.MissingHostKeyPolicy):
    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        raise AuthError(f"Host key for {hostname} is not in known_hosts")


_HOST_KEY_POLICIES: dict[HostKeyPolicy, type[paramiko.MissingHostKeyPolicy]] = {
    HostKeyPolicy.REJECT: _RejectUnknownHost,
    HostKeyPolicy.WARN: paramiko.WarningPolicy,
    HostKeyPolicy.AUTO_ADD: paramiko.AutoAddPolicy,
}


def manifest_command(root: str, exclude: tuple[str, ...]) -> str:
    """Shell command listing mode and SHA-256 of every file under ``root``.

    Excluded paths are pruned so the remote host never hashes them. Output
    has one ``M <octal mode> <path>`` line per file followed by standard
    ``sha256sum`` lines. A missing root produces no output.
    """
    prune_terms = []
    for raw in exclude:
        pattern = raw.strip("/")
        if not pattern:
            continue
        if "/" in pattern:
            prune_terms.append(f"-path {shlex.quote('./' + pattern)}")
        else:
            prune_terms.append(f"-name {shlex.quote(pattern)}")
    prune = f"\\( {' -o '.join(prune_terms)} \\) -prune -o " if prune_terms else ""
    find = f"find . {prune}-type f"
    return (
        f"cd {shlex.quote(root)} 2>/dev/null || exit 0; "
        f"{find} -printf 'M %m %P\\n' && {find} -exec sha256sum {{}} +"
    )


def parse_manifest(output: str) -> dict[str, FileEntry]:
    """Parse the output of ``manifest_command``."""
    modes: dict[str, int] = {}
    hashes: dict[str, str] = {}
    for line in output.splitlines():
        if line.startswith("M "):
            _, mode, path = line.split(" ", 2)
            modes[path] = int(mode, 8)
        elif len(line) > SHA256_HEX_LENGTH + 2 and line[SHA256_HEX_LENGTH] == " ":
            digest = line[:SHA256_HEX_LENGTH]
            path = line[SHA256_HEX_LENGTH + 2 :]
            hashes[path.removeprefix("./")] = digest
    return {
        path: FileEntry(sha256=digest, mode=modes.get(path, 0))
        for path, digest in hashes.items()
    }


class SSHTransport:
    """paramiko-backed transport to one target host."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        credential: Credential,
        connect_timeout: float = 10.0,
        host_key_policy: HostKeyPolicy = HostKeyPolicy.REJECT,
        known_hosts: str | None = None,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.credential = credential
        self.connect_timeout = connect_timeout
        self.host_key_policy = host_key_policy
        self.known_hosts = known_hosts
        self._client: paramiko.SSHClient | None = None
        self._sftp: paramiko.SFTPClient | None = None

    @property
    def is_active(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self) -> None:
        client = paramiko.SSHClient()
        client.load_system_host_keys()
        if self.known_hosts:
            client.load_host_keys(str(Path(self.known_hosts).expanduser()))
        client.set_missing_host_key_policy(_HOST_KEY_POLICIES[self.host_key_policy]())

        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                pkey=self.credential.load_key(),
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except AuthError:
            client.close()
            raise
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthError(f"{self.username}@{self.host} rejected credential: {e}") from None
        except paramiko.BadHostKeyException as e:
            client.close()
            raise AuthError(f"Host key mismatch for {self.host}: {e}") from None
        except (paramiko.SSHException, OSError, EOFError) as e:
            client.close()
            raise TransientNetworkError(
                f"Cannot connect to {self.host}:{self.port}: {e or type(e).__name__}"
            ) from e

        self._client = client
        logger.debug(f"SSH session opened to {self.username}@{self.host}:{self.port}")

    def _require_client(self) -> paramiko.SSHClient:
        if not self.is_active or self._client is None:
            raise TransientNetworkError(f"SSH transport to {self.host} is not connected")
        return self._client

    def exec(self, command: str, timeout: float, limit: int) -> tuple[int, bytes, bool]:
        """Run a command, returning exit code, captured output and truncation flag.

        stdout and stderr are combined. At most ``limit`` bytes are kept; the
        rest is drained and discarded.

        Raises:
            RemoteCommandTimeout: If the command outlives ``timeout``
            TransientNetworkError: If the connection drops
        """
        transport = self._require_client().get_transport()
        if transport is None:
            raise TransientNetworkError(f"SSH transport to {self.host} is not connected")
        try:
            channel = transport.open_session(timeout=self.connect_timeout)
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise TransientNetworkError(f"Cannot open channel to {self.host}: {e}") from e

        deadline = time.monotonic() + timeout
        captured = bytearray()
        truncated = False
        try:
            channel.set_combined_stderr(True)
            channel.settimeout(timeout)
            channel.exec_command(command)
            while True:
                if time.monotonic() > deadline:
                    raise TimeoutError
                data = channel.recv(RECV_CHUNK)
                if not data:
                    break
                room = limit - len(captured)
                if room > 0:
                    captured.extend(data[:room])
                if len(data) > max(room, 0):
                    truncated = True
            exit_code = channel.recv_exit_status()
        except TimeoutError:
            raise RemoteCommandTimeout(
                command, timeout, bytes(captured).decode(errors="replace")
            ) from None
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise TransientNetworkError(f"Connection to {self.host} lost: {e}") from e
        finally:
            channel.close()

        if exit_code == -1 and not self.is_active:
            raise TransientNetworkError(f"Connection to {self.host} lost during command")
        return exit_code, bytes(captured), truncated

    def manifest(self, root: str, exclude: tuple[str, ...], timeout: float) -> dict[str, FileEntry]:
        exit_code, output, truncated = self.exec(
            manifest_command(root, exclude), timeout, limit=256 * 1024 * 1024
        )
        if exit_code != 0:
            raise SyncFailure(
                f"Cannot list {root} on {self.host} (exit {exit_code}): "
                f"{output.decode(errors='replace')[-500:]}"
            )
        return parse_manifest(output.decode(errors="replace"))

    def _require_sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            client = self._require_client()
            try:
                self._sftp = client.open_sftp()
            except (paramiko.SSHException, OSError, EOFError) as e:
                raise TransientNetworkError(f"Cannot open SFTP to {self.host}: {e}") from e
        return self._sftp

    def put(self, local_path: Path, remote_path: str, mode: int) -> None:
        """Upload one file atomically (temp file, chmod, rename)."""
        sftp = self._require_sftp()
        temporary = remote_path + TMP_SUFFIX
        try:
            sftp.put(str(local_path), temporary)
            sftp.chmod(temporary, mode)
            sftp.posix_rename(temporary, remote_path)
        except (paramiko.SSHException, OSError, EOFError) as e:
            if not self.is_active or isinstance(e, socket.timeout | EOFError):
                raise TransientNetworkError(f"Transfer to {self.host} interrupted: {e}") from e
            raise SyncFailure(f"Cannot upload {local_path} to {self.host}:{remote_path}: {e}") from e

    def close(self) -> None:
        if self._sftp is not None:
            try:
                self._sftp.close()
            except (paramiko.SSHException, OSError, EOFError):
                pass
            self._sftp = None
        if self._client is not None:
            self._client.close()
            self._client = None
            logger.debug(f"SSH session to {self.host} closed")
