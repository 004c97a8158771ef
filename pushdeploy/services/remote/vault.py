"""
Credential vault collaborators.

The vault hands out ``Credential`` handles by opaque identifier. A handle
keeps its key material in a ``SecretStr`` so it never shows up in reprs,
logs or API responses; the material is only read when a paramiko key is
built for a connection.
"""

import io
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

import paramiko
from pydantic import SecretStr

from pushdeploy.exceptions.domain import AuthError, CredentialNotFoundError
from pushdeploy.settings import Settings, VaultBackend

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

# Tried in order; paramiko raises SSHException for a mismatched format.
KEY_CLASSES: tuple[type[paramiko.PKey], ...] = (
    paramiko.Ed25519Key,
    paramiko.ECDSAKey,
    paramiko.RSAKey,
)


@dataclass(frozen=True)
class Credential:
    """Handle to private key material held by a vault."""

    identifier: str
    material: SecretStr = field(repr=False)
    passphrase: SecretStr | None = field(default=None, repr=False)

    def load_key(self) -> paramiko.PKey:
        """Build a paramiko key from the stored material.

        Raises:
            AuthError: If the material is not a supported private key
        """
        password = self.passphrase.get_secret_value() if self.passphrase else None
        for key_class in KEY_CLASSES:
            try:
                return key_class.from_private_key(
                    io.StringIO(self.material.get_secret_value()), password=password
                )
            except paramiko.PasswordRequiredException:
                raise AuthError(f"Credential '{self.identifier}' needs a passphrase") from None
            except (paramiko.SSHException, ValueError):
                continue
        raise AuthError(f"Credential '{self.identifier}' is not a supported private key")


class CredentialVault(Protocol):
    """Resolves credential identifiers to credential handles."""

    def get(self, identifier: str) -> Credential: ...


def _check_identifier(identifier: str) -> None:
    if not IDENTIFIER_PATTERN.match(identifier):
        raise CredentialNotFoundError(identifier)


class FileVault:
    """Keys stored one per file, named by identifier, in a directory.

    An optional ``<identifier>.passphrase`` file next to the key holds its
    passphrase.
    """

    def __init__(self, root: Path):
        self.root = root.expanduser()

    def get(self, identifier: str) -> Credential:
        _check_identifier(identifier)
        key_path = self.root / identifier
        if not key_path.is_file():
            raise CredentialNotFoundError(identifier)
        passphrase_path = self.root / f"{identifier}.passphrase"
        passphrase = None
        if passphrase_path.is_file():
            passphrase = SecretStr(passphrase_path.read_text().strip())
        return Credential(identifier, SecretStr(key_path.read_text()), passphrase)


class EnvVault:
    """Keys stored in ``PUSHDEPLOY_KEY_<ID>`` environment variables.

    The identifier is upper-cased with non-alphanumerics replaced by ``_``.
    ``PUSHDEPLOY_KEY_<ID>_PASSPHRASE`` holds an optional passphrase.
    """

    prefix = "PUSHDEPLOY_KEY_"

    def variable_name(self, identifier: str) -> str:
        return self.prefix + re.sub(r"[^A-Za-z0-9]", "_", identifier).upper()

    def get(self, identifier: str) -> Credential:
        _check_identifier(identifier)
        name = self.variable_name(identifier)
        material = os.environ.get(name)
        if not material:
            raise CredentialNotFoundError(identifier)
        passphrase = os.environ.get(f"{name}_PASSPHRASE")
        return Credential(
            identifier,
            SecretStr(material.replace("\\n", "\n")),
            SecretStr(passphrase) if passphrase else None,
        )


class MemoryVault:
    """Vault backed by a dictionary, for embedding and tests."""

    def __init__(self, keys: dict[str, str] | None = None):
        self._keys = dict(keys or {})

    def add(self, identifier: str, material: str) -> None:
        self._keys[identifier] = material

    def get(self, identifier: str) -> Credential:
        if identifier not in self._keys:
            raise CredentialNotFoundError(identifier)
        return Credential(identifier, SecretStr(self._keys[identifier]))


def create_vault(config: Settings) -> CredentialVault:
    """Build the vault selected by settings."""
    if config.vault_backend == VaultBackend.ENV:
        return EnvVault()
    return FileVault(Path(config.vault_path))
