"""
Unit tests for TokenStorage implementations.
"""
import json
from unittest.mock import MagicMock, patch

import pytest
from cryptography.fernet import Fernet

from dashnex_auth.auth.token_storage import (
    EncryptedFileTokenStorage,
    KeyringTokenStorage,
    MemoryTokenStorage,
    get_token_storage,
    maybe_await,
    supports_pkce,
)
from dashnex_auth.config import StorageConfig
from dashnex_auth.exceptions import EncryptionError, TokenStorageError


@pytest.fixture
def storage_config_keyring():
    return StorageConfig(method="keyring", keyring_service_name="test_dashnex_service", key_prefix="test")

@pytest.fixture
def mock_keyring_module():
    with patch('dashnex_auth.auth.token_storage.keyring') as mock_keyring:
        mock_keyring_db = {}

        def set_password_mock(service, username, password):
            mock_keyring_db[(service, username)] = password

        def get_password_mock(service, username):
            return mock_keyring_db.get((service, username))

        def delete_password_mock(service, username):
            if (service, username) not in mock_keyring_db:
                raise mock_keyring.errors.PasswordDeleteError("not found")
            del mock_keyring_db[(service, username)]

        mock_keyring.set_password = MagicMock(side_effect=set_password_mock)
        mock_keyring.get_password = MagicMock(side_effect=get_password_mock)
        mock_keyring.delete_password = MagicMock(side_effect=delete_password_mock)
        mock_keyring.errors = MagicMock()
        mock_keyring.errors.KeyringError = type('KeyringError', (Exception,), {})
        mock_keyring.errors.NoKeyringError = type('NoKeyringError', (mock_keyring.errors.KeyringError,), {})
        mock_keyring.errors.PasswordSetError = type('PasswordSetError', (mock_keyring.errors.KeyringError,), {})
        mock_keyring.errors.PasswordDeleteError = type('PasswordDeleteError', (mock_keyring.errors.KeyringError,), {})

        yield mock_keyring, mock_keyring_db


# --- Helpers ----------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_maybe_await_handles_values_and_coroutines():
    async def coro():
        return "async-value"

    assert await maybe_await("sync-value") == "sync-value"
    assert await maybe_await(coro()) == "async-value"
    assert await maybe_await(None) is None

def test_supports_pkce():
    assert supports_pkce(MemoryTokenStorage()) is True
    assert supports_pkce(object()) is False

    class VerifierOnly:
        def get_code_verifier(self): ...
        def set_code_verifier(self, verifier): ...

    assert supports_pkce(VerifierOnly()) is False


# --- MemoryTokenStorage -----------------------------------------------------------------

def test_memory_storage_round_trip():
    storage = MemoryTokenStorage()
    assert storage.get_access_token() is None
    assert storage.get_refresh_token() is None

    storage.set_tokens("acc", "ref")
    storage.set_access_token("acc-2")
    assert (storage.get_access_token(), storage.get_refresh_token()) == ("acc-2", "ref")

    storage.set_refresh_token("ref-2")
    storage.set_code_verifier("verifier")
    storage.set_state("state")
    assert storage.get_refresh_token() == "ref-2"

    storage.clear_tokens()
    assert storage.get_access_token() is None
    assert storage.get_refresh_token() is None
    assert storage.get_code_verifier() is None
    assert storage.get_state() is None

def test_memory_storage_accepts_absent_refresh_token():
    storage = MemoryTokenStorage()
    storage.set_tokens("acc", None)
    assert storage.get_access_token() == "acc"
    assert storage.get_refresh_token() is None


# --- KeyringTokenStorage ----------------------------------------------------------------

@pytest.mark.asyncio
async def test_keyring_set_tokens_writes_single_entry(storage_config_keyring, mock_keyring_module):
    mock_keyring, db = mock_keyring_module
    storage = KeyringTokenStorage(storage_config_keyring)

    await storage.set_tokens("acc123", "ref456")

    mock_keyring.set_password.assert_called_once()
    service, key, value = mock_keyring.set_password.call_args.args
    assert service == "test_dashnex_service"
    assert key == "test_session"
    assert json.loads(value) == {"access_token": "acc123", "refresh_token": "ref456"}
    assert await storage.get_access_token() == "acc123"
    assert await storage.get_refresh_token() == "ref456"

@pytest.mark.asyncio
async def test_keyring_get_without_entries(storage_config_keyring, mock_keyring_module):
    storage = KeyringTokenStorage(storage_config_keyring)

    assert await storage.get_access_token() is None
    assert await storage.get_refresh_token() is None
    assert await storage.get_code_verifier() is None
    assert await storage.get_state() is None

@pytest.mark.asyncio
async def test_keyring_single_token_updates_keep_the_other(storage_config_keyring, mock_keyring_module):
    storage = KeyringTokenStorage(storage_config_keyring)
    await storage.set_tokens("acc", "ref")

    await storage.set_access_token("acc-2")
    assert await storage.get_refresh_token() == "ref"

    await storage.set_refresh_token("ref-2")
    assert await storage.get_access_token() == "acc-2"
    assert await storage.get_refresh_token() == "ref-2"

@pytest.mark.asyncio
async def test_keyring_pkce_artifacts(storage_config_keyring, mock_keyring_module):
    _, db = mock_keyring_module
    storage = KeyringTokenStorage(storage_config_keyring)

    await storage.set_code_verifier("verifier-value")
    await storage.set_state("state-value")
    assert db[("test_dashnex_service", "test_code_verifier")] == "verifier-value"
    assert await storage.get_state() == "state-value"

    await storage.set_code_verifier(None)
    await storage.set_code_verifier(None) # Deleting a missing entry is not an error
    assert await storage.get_code_verifier() is None

@pytest.mark.asyncio
async def test_keyring_clear_tokens(storage_config_keyring, mock_keyring_module):
    _, db = mock_keyring_module
    storage = KeyringTokenStorage(storage_config_keyring)
    await storage.set_tokens("acc", "ref")
    await storage.set_state("state-value")

    await storage.clear_tokens()
    await storage.clear_tokens()

    assert db == {}

@pytest.mark.asyncio
async def test_keyring_corrupted_session_is_discarded(storage_config_keyring, mock_keyring_module):
    _, db = mock_keyring_module
    db[("test_dashnex_service", "test_session")] = "{not json"
    storage = KeyringTokenStorage(storage_config_keyring)

    assert await storage.get_access_token() is None
    assert ("test_dashnex_service", "test_session") not in db

@pytest.mark.asyncio
async def test_keyring_no_backend(storage_config_keyring, mock_keyring_module):
    mock_keyring, _ = mock_keyring_module
    mock_keyring.set_password.side_effect = mock_keyring.errors.NoKeyringError("no backend")
    storage = KeyringTokenStorage(storage_config_keyring)

    with pytest.raises(TokenStorageError) as excinfo:
        await storage.set_tokens("acc", "ref")
    assert "No keyring backend available" in str(excinfo.value)

@pytest.mark.asyncio
async def test_keyring_other_store_error_is_wrapped(storage_config_keyring, mock_keyring_module):
    mock_keyring, _ = mock_keyring_module
    mock_keyring.set_password.side_effect = mock_keyring.errors.KeyringError("locked")
    storage = KeyringTokenStorage(storage_config_keyring)

    with pytest.raises(TokenStorageError) as excinfo:
        await storage.set_code_verifier("verifier")
    assert isinstance(excinfo.value.__cause__, mock_keyring.errors.KeyringError)

@pytest.mark.asyncio
async def test_keyring_other_delete_error_is_wrapped(storage_config_keyring, mock_keyring_module):
    mock_keyring, _ = mock_keyring_module
    mock_keyring.delete_password.side_effect = mock_keyring.errors.KeyringError("locked")
    storage = KeyringTokenStorage(storage_config_keyring)

    with pytest.raises(TokenStorageError) as excinfo:
        await storage.set_state(None)
    assert "Failed to delete item from keyring" in str(excinfo.value)


# --- EncryptedFileTokenStorage ----------------------------------------------------------

@pytest.mark.asyncio
async def test_encrypted_file_round_trip(tmp_path):
    key = Fernet.generate_key()
    token_file = tmp_path / "tokens.enc"
    storage = EncryptedFileTokenStorage(token_file, key)

    await storage.set_tokens("acc", "ref")
    await storage.set_code_verifier("verifier")

    assert b"acc" not in token_file.read_bytes()
    reopened = EncryptedFileTokenStorage(token_file, key)
    assert await reopened.get_access_token() == "acc"
    assert await reopened.get_refresh_token() == "ref"
    assert await reopened.get_code_verifier() == "verifier"

    await reopened.set_refresh_token("ref-2")
    assert await storage.get_refresh_token() == "ref-2"
    assert await storage.get_access_token() == "acc"

    await storage.clear_tokens()
    assert await reopened.get_access_token() is None
    assert await reopened.get_code_verifier() is None
    assert list(tmp_path.iterdir()) == [token_file] # No temp files left behind

@pytest.mark.asyncio
async def test_encrypted_file_missing_file_reads_as_empty(tmp_path):
    storage = EncryptedFileTokenStorage(tmp_path / "absent.enc", Fernet.generate_key())
    assert await storage.get_access_token() is None
    assert await storage.get_state() is None

@pytest.mark.asyncio
async def test_encrypted_file_wrong_key(tmp_path):
    token_file = tmp_path / "tokens.enc"
    await EncryptedFileTokenStorage(token_file, Fernet.generate_key()).set_tokens("acc", "ref")

    with pytest.raises(EncryptionError):
        await EncryptedFileTokenStorage(token_file, Fernet.generate_key()).get_access_token()

def test_encrypted_file_invalid_key(tmp_path):
    with pytest.raises(EncryptionError):
        EncryptedFileTokenStorage(tmp_path / "tokens.enc", b"not-a-fernet-key")

def test_derive_key_from_password_is_stable():
    salt = b"0123456789abcdef"
    key = EncryptedFileTokenStorage.derive_key_from_password("hunter2", salt)
    assert key == EncryptedFileTokenStorage.derive_key_from_password("hunter2", salt)
    Fernet(key) # Must be a usable Fernet key

    with pytest.raises(ValueError):
        EncryptedFileTokenStorage.derive_key_from_password("hunter2", b"short")


# --- Factory ----------------------------------------------------------------------------

def test_get_token_storage_memory():
    assert isinstance(get_token_storage(StorageConfig(method="memory")), MemoryTokenStorage)

def test_get_token_storage_keyring(storage_config_keyring):
    storage = get_token_storage(storage_config_keyring)
    assert isinstance(storage, KeyringTokenStorage)
    assert storage.service_name == "test_dashnex_service"

def test_get_token_storage_file_with_key(tmp_path, monkeypatch):
    monkeypatch.setenv("DASHNEX_AUTH_ENCRYPTION_KEY", Fernet.generate_key().decode())
    storage = get_token_storage(StorageConfig(method="file", encrypted_token_file_path=tmp_path / "t.enc"))
    assert isinstance(storage, EncryptedFileTokenStorage)

def test_get_token_storage_file_with_password(tmp_path, monkeypatch):
    monkeypatch.delenv("DASHNEX_AUTH_ENCRYPTION_KEY", raising=False)
    monkeypatch.setenv("DASHNEX_AUTH_ENCRYPTION_PASSWORD", "correct horse")
    config = StorageConfig(method="file", encrypted_token_file_path=tmp_path / "t.enc")

    first = get_token_storage(config)
    second = get_token_storage(config)

    assert (tmp_path / "t.enc.salt").exists()
    assert first.fernet.decrypt(second.fernet.encrypt(b"x")) == b"x"

def test_get_token_storage_file_without_key(tmp_path, monkeypatch):
    monkeypatch.delenv("DASHNEX_AUTH_ENCRYPTION_KEY", raising=False)
    monkeypatch.delenv("DASHNEX_AUTH_ENCRYPTION_PASSWORD", raising=False)
    with pytest.raises(TokenStorageError):
        get_token_storage(StorageConfig(method="file", encrypted_token_file_path=tmp_path / "t.enc"))

def test_get_token_storage_file_without_path():
    with pytest.raises(TokenStorageError):
        get_token_storage(StorageConfig(method="file"))
