"""
Async remote session bound to one run.

``RemoteSession`` wraps a blocking ``Transport`` and exposes the two
operations stages need: running a command and synchronizing a file tree.
Each blocking call runs in a worker thread under ``asyncio.wait_for``; when
the wait times out or the run is cancelled, the transport is closed so the
abandoned thread unblocks and exits.
"""

import asyncio
import posixpath
import shlex
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, TypeVar

from pushdeploy.exceptions.domain import (
    RemoteCommandFailure,
    RemoteCommandTimeout,
    SyncFailure,
    TransientNetworkError,
)
from pushdeploy.utils.file_patterns import is_excluded, local_manifest, parent_dirs
from pushdeploy.utils.logger import logger

from .transport import Transport

T = TypeVar("T")

# Extra time a blocking call gets beyond its own timeout before it is abandoned.
CALL_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one remote command."""

    exit_code: int
    output: str
    truncated: bool = False


@dataclass
class SyncReport:
    """Summary of one tree synchronization."""

    bytes_transferred: int = 0
    changed_files: list[str] = field(default_factory=list)
    deleted_files: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changed_files or self.deleted_files)


class RemoteSession:
    """Lazily connected session to one target host.

    Args:
        transport_factory: Builds a fresh, unconnected transport
        address: ``user@host:port`` used in log messages
        command_timeout: Default per-command timeout in seconds
        output_limit: Maximum captured output per command in bytes
        connect_timeout: Timeout for establishing the connection
    """

    def __init__(
        self,
        transport_factory: Callable[[], Transport],
        address: str,
        command_timeout: float = 120.0,
        output_limit: int = 64 * 1024,
        connect_timeout: float = 10.0,
    ):
        self._transport_factory = transport_factory
        self.address = address
        self.command_timeout = command_timeout
        self.output_limit = output_limit
        self.connect_timeout = connect_timeout
        self._transport: Transport | None = None
        self.connections = 0

    @property
    def connected(self) -> bool:
        return self._transport is not None and self._transport.is_active

    async def _call(self, timeout: float, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking transport call in a thread.

        Raises:
            TimeoutError: If the call is abandoned; the transport is closed
        """
        transport = self._transport
        try:
            return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
        except (TimeoutError, asyncio.CancelledError):
            self._discard(transport)
            raise

    async def _network_call(self, timeout: float, func: Callable[..., T], *args: Any) -> T:
        try:
            return await self._call(timeout, func, *args)
        except TimeoutError:
            raise TransientNetworkError(
                f"No response from {self.address} within {timeout:g}s"
            ) from None

    def _discard(self, transport: Transport | None) -> None:
        if transport is None:
            return
        transport.close()
        if self._transport is transport:
            self._transport = None

    async def connect(self) -> None:
        """Open the connection if it is not already open."""
        if self.connected:
            return
        self._discard(self._transport)
        transport = self._transport_factory()
        self._transport = transport
        await self._network_call(self.connect_timeout + CALL_GRACE_SECONDS, transport.connect)
        self.connections += 1
        logger.info(f"Connected to {self.address}")

    async def _ready(self) -> Transport:
        await self.connect()
        if self._transport is None:
            raise TransientNetworkError(f"Connection to {self.address} was dropped")
        return self._transport

    async def execute(
        self,
        command: str,
        timeout: float | None = None,
        tolerate: tuple[int, ...] | frozenset[int] = (),
    ) -> CommandResult:
        """Run a command on the target host.

        Args:
            command: Shell command line
            timeout: Per-call timeout, defaults to the session's command timeout
            tolerate: Non-zero exit codes that do not raise

        Returns:
            CommandResult with exit code and bounded combined output

        Raises:
            RemoteCommandFailure: If the command exits with an untolerated code
            RemoteCommandTimeout: If the command outlives its timeout
            TransientNetworkError: If the connection fails
            AuthError: If the host rejects the credential
        """
        timeout = timeout or self.command_timeout
        transport = await self._ready()
        logger.debug(f"{self.address}$ {command}")
        try:
            exit_code, raw, truncated = await self._call(
                timeout + CALL_GRACE_SECONDS, transport.exec, command, timeout, self.output_limit
            )
        except TimeoutError:
            raise RemoteCommandTimeout(command, timeout) from None
        except TransientNetworkError:
            self._discard(transport)
            raise

        output = raw.decode(errors="replace")
        if truncated:
            output += f"\n[output truncated at {self.output_limit} bytes]"
        result = CommandResult(exit_code=exit_code, output=output, truncated=truncated)
        if exit_code != 0 and exit_code not in tolerate:
            raise RemoteCommandFailure(command, exit_code, output, truncated)
        return result

    async def sync_tree(
        self,
        local_root: Path,
        remote_root: str,
        exclude: tuple[str, ...] = (),
        delete: bool = False,
        timeout: float | None = None,
    ) -> SyncReport:
        """Make ``remote_root`` mirror ``local_root``.

        Only files whose content hash or permission bits differ are sent.
        Excluded paths are neither listed, sent nor deleted.

        Args:
            local_root: Local directory to publish
            remote_root: Absolute remote directory
            exclude: fnmatch-style exclude patterns
            delete: Remove remote files that no longer exist locally
            timeout: Per-call timeout for listing and per-file transfers

        Returns:
            SyncReport with transferred bytes and changed paths

        Raises:
            SyncFailure: If the local tree is missing or a transfer fails
            TransientNetworkError: If the connection drops
        """
        if not local_root.is_dir():
            raise SyncFailure(f"Local source directory {local_root} does not exist")
        timeout = timeout or self.command_timeout

        local = await asyncio.to_thread(local_manifest, local_root, exclude)
        transport = await self._ready()
        remote = await self._network_call(
            timeout + CALL_GRACE_SECONDS, transport.manifest, remote_root, exclude, timeout
        )

        changed = [
            path
            for path, entry in local.items()
            if path not in remote
            or remote[path].sha256 != entry.sha256
            or remote[path].mode != entry.mode
        ]
        stale = (
            sorted(p for p in remote if p not in local and not is_excluded(p, exclude))
            if delete
            else []
        )
        report = SyncReport()

        if changed:
            directories = [remote_root] + [
                posixpath.join(remote_root, d) for d in parent_dirs(changed)
            ]
            try:
                await self.execute(
                    "mkdir -p " + " ".join(shlex.quote(d) for d in directories), timeout
                )
            except RemoteCommandFailure as e:
                raise SyncFailure(f"Cannot create directories on {self.address}: {e}") from e
            for path in changed:
                entry = local[path]
                await self._network_call(
                    timeout + CALL_GRACE_SECONDS,
                    transport.put,
                    local_root / path,
                    posixpath.join(remote_root, path),
                    entry.mode,
                )
                report.bytes_transferred += entry.size
                report.changed_files.append(path)

        if stale:
            try:
                await self.execute(
                    "rm -f -- "
                    + " ".join(shlex.quote(posixpath.join(remote_root, p)) for p in stale),
                    timeout,
                )
            except RemoteCommandFailure as e:
                raise SyncFailure(f"Cannot delete stale files on {self.address}: {e}") from e
            report.deleted_files.extend(stale)

        logger.info(
            f"Synced {local_root} to {self.address}:{remote_root}: "
            f"{len(report.changed_files)} changed, {len(report.deleted_files)} deleted, "
            f"{report.bytes_transferred} bytes"
        )
        return report

    def reset(self) -> None:
        """Drop the current connection; the next call reconnects."""
        self._discard(self._transport)

    async def close(self) -> None:
        if self._transport is not None:
            await asyncio.to_thread(self._transport.close)
            self._transport = None
            logger.debug(f"Session to {self.address} closed")
