"""Unit tests for credential vaults."""

import io
from pathlib import Path

import paramiko
import pytest

from pushdeploy.exceptions.domain import AuthError, CredentialNotFoundError
from pushdeploy.services.remote.vault import EnvVault, FileVault, MemoryVault, create_vault
from pushdeploy.settings import Settings, VaultBackend


@pytest.fixture(scope="module")
def rsa_pem() -> str:
    key = paramiko.RSAKey.generate(2048)
    buffer = io.StringIO()
    key.write_private_key(buffer)
    return buffer.getvalue()


class TestFileVault:
    """Tests for FileVault."""

    def test_reads_key_and_passphrase(self, tmp_path: Path):
        (tmp_path / "web-deploy").write_text("KEY MATERIAL")
        (tmp_path / "web-deploy.passphrase").write_text("hunter2\n")

        credential = FileVault(tmp_path).get("web-deploy")

        assert credential.material.get_secret_value() == "KEY MATERIAL"
        assert credential.passphrase is not None
        assert credential.passphrase.get_secret_value() == "hunter2"

    def test_missing_key(self, tmp_path: Path):
        with pytest.raises(CredentialNotFoundError):
            FileVault(tmp_path).get("absent")

    @pytest.mark.parametrize("identifier", ["../etc/passwd", "/abs", ".hidden", ""])
    def test_identifiers_cannot_escape_root(self, tmp_path: Path, identifier: str):
        with pytest.raises(CredentialNotFoundError):
            FileVault(tmp_path).get(identifier)


class TestEnvVault:
    """Tests for EnvVault."""

    def test_reads_variable(self, monkeypatch):
        monkeypatch.setenv("PUSHDEPLOY_KEY_WEB_DEPLOY", "line1\\nline2")
        monkeypatch.setenv("PUSHDEPLOY_KEY_WEB_DEPLOY_PASSPHRASE", "pw")

        credential = EnvVault().get("web-deploy")

        assert credential.material.get_secret_value() == "line1\nline2"
        assert credential.passphrase is not None

    def test_missing_variable(self, monkeypatch):
        monkeypatch.delenv("PUSHDEPLOY_KEY_NOPE", raising=False)
        with pytest.raises(CredentialNotFoundError):
            EnvVault().get("nope")


class TestCredential:
    """Tests for Credential handles."""

    def test_material_is_hidden_from_repr(self):
        credential = MemoryVault({"k": "super-secret-material"}).get("k")
        assert "super-secret-material" not in repr(credential)
        assert "super-secret-material" not in str(credential)

    def test_load_rsa_key(self, rsa_pem: str):
        key = MemoryVault({"k": rsa_pem}).get("k").load_key()
        assert isinstance(key, paramiko.RSAKey)

    def test_garbage_material_is_auth_error(self):
        with pytest.raises(AuthError, match="not a supported private key"):
            MemoryVault({"k": "not a key"}).get("k").load_key()


def test_create_vault_follows_settings(tmp_path: Path):
    assert isinstance(create_vault(Settings(vault_backend=VaultBackend.ENV)), EnvVault)
    vault = create_vault(Settings(vault_backend=VaultBackend.FILE, vault_path=str(tmp_path)))
    assert isinstance(vault, FileVault)
    assert vault.root == tmp_path
