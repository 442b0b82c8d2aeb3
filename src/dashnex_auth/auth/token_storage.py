"""
Token persistence for the DashNex OAuth client.

A store holds four nullable strings: the access token, the refresh token and two
short-lived PKCE artifacts (code verifier and anti-CSRF state). Store methods may be
plain functions or coroutines; the client resolves both through ``maybe_await``.
The PKCE members are an optional capability, detected with ``supports_pkce``.
"""
import abc
import asyncio
import base64
import inspect
import json
import os
import secrets
import tempfile
from collections.abc import Awaitable
from pathlib import Path
from typing import Any, Optional, TypeVar, Union

import keyring
import structlog
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..config import StorageConfig
from ..exceptions import EncryptionError, TokenStorageError

logger = structlog.get_logger(__name__)

T = TypeVar("T")
MaybeAwaitable = Union[T, Awaitable[T]]

PKCE_CAPABILITY = ("get_code_verifier", "set_code_verifier", "get_state", "set_state")

ENCRYPTION_KEY_ENV_VAR = "DASHNEX_AUTH_ENCRYPTION_KEY"
ENCRYPTION_PASSWORD_ENV_VAR = "DASHNEX_AUTH_ENCRYPTION_PASSWORD"


async def maybe_await(value: MaybeAwaitable[T]) -> T:
    """Returns the value, awaiting it first if a store method handed back an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


def supports_pkce(store: Any) -> bool:
    """True if the store can persist a code verifier and a state value."""
    return all(callable(getattr(store, name, None)) for name in PKCE_CAPABILITY)


class BaseTokenStorage(abc.ABC):
    """Abstract base class for the required token read/write capability.

    Implementations may define these methods as ``def`` or ``async def``.
    """

    @abc.abstractmethod
    def get_access_token(self) -> MaybeAwaitable[Optional[str]]:
        pass

    @abc.abstractmethod
    def get_refresh_token(self) -> MaybeAwaitable[Optional[str]]:
        pass

    @abc.abstractmethod
    def set_tokens(self, access_token: str, refresh_token: Optional[str]) -> MaybeAwaitable[None]:
        """Stores both tokens. Concurrent readers must never observe only one of them updated."""
        pass

    @abc.abstractmethod
    def set_access_token(self, token: str) -> MaybeAwaitable[None]:
        pass

    @abc.abstractmethod
    def set_refresh_token(self, token: str) -> MaybeAwaitable[None]:
        pass

    @abc.abstractmethod
    def clear_tokens(self) -> MaybeAwaitable[None]:
        """Removes both tokens and, where supported, the PKCE verifier and state."""
        pass

class PKCETokenStorage(BaseTokenStorage):
    """Token storage that can also hold the PKCE verifier and state between redirect and callback."""

    @abc.abstractmethod
    def get_code_verifier(self) -> MaybeAwaitable[Optional[str]]:
        pass

    @abc.abstractmethod
    def set_code_verifier(self, verifier: Optional[str]) -> MaybeAwaitable[None]:
        """Stores the verifier, or removes it when given None."""
        pass

    @abc.abstractmethod
    def get_state(self) -> MaybeAwaitable[Optional[str]]:
        pass

    @abc.abstractmethod
    def set_state(self, state: Optional[str]) -> MaybeAwaitable[None]:
        """Stores the state, or removes it when given None."""
        pass


class MemoryTokenStorage(PKCETokenStorage):
    """
    In-process storage. Synchronous; lives as long as the object.
    The token pair is kept in one tuple so set_tokens is a single assignment.
    """

    def __init__(self) -> None:
        self._tokens: tuple[Optional[str], Optional[str]] = (None, None)
        self._code_verifier: Optional[str] = None
        self._state: Optional[str] = None

    def get_access_token(self) -> Optional[str]:
        return self._tokens[0]

    def get_refresh_token(self) -> Optional[str]:
        return self._tokens[1]

    def set_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        self._tokens = (access_token, refresh_token)

    def set_access_token(self, token: str) -> None:
        self._tokens = (token, self._tokens[1])

    def set_refresh_token(self, token: str) -> None:
        self._tokens = (self._tokens[0], token)

    def clear_tokens(self) -> None:
        self._tokens = (None, None)
        self._code_verifier = None
        self._state = None

    def get_code_verifier(self) -> Optional[str]:
        return self._code_verifier

    def set_code_verifier(self, verifier: Optional[str]) -> None:
        self._code_verifier = verifier

    def get_state(self) -> Optional[str]:
        return self._state

    def set_state(self, state: Optional[str]) -> None:
        self._state = state


class KeyringTokenStorage(PKCETokenStorage):
    """
    Stores tokens securely in the system keyring.
    The token pair lives in a single JSON entry ("{prefix}_session") so it is written in one
    keyring call; the verifier and state use their own entries.
    """
    SESSION_SUFFIX = "_session"
    CODE_VERIFIER_SUFFIX = "_code_verifier"
    STATE_SUFFIX = "_state"

    def __init__(self, storage_config: StorageConfig):
        self.service_name = storage_config.keyring_service_name
        self.prefix = storage_config.key_prefix
        self._write_lock = asyncio.Lock() # Serializes read-modify-write of the session entry
        self.logger = logger.bind(storage_type="keyring", service_name=self.service_name)

    def _get_key(self, suffix: str) -> str:
        return f"{self.prefix}{suffix}"

    async def _store_item(self, key: str, value: str) -> None:
        try:
            keyring.set_password(self.service_name, key, value)
            self.logger.debug("Stored item in keyring", key=key)
        except keyring.errors.NoKeyringError as e:
            self.logger.error("No keyring backend found. Please install a keyring provider (e.g., SecretService, Windows Credential Manager).")
            raise TokenStorageError("No keyring backend available.") from e
        except keyring.errors.PasswordSetError as e:
            self.logger.error("Failed to store item in keyring", key=key, error=str(e))
            raise TokenStorageError(f"Failed to store item in keyring for key '{key}': {e}") from e
        except keyring.errors.KeyringError as e:
            self.logger.error("Keyring error while storing item", key=key, error=str(e))
            raise TokenStorageError(f"Keyring error while storing key '{key}': {e}") from e

    async def _get_item(self, key: str) -> Optional[str]:
        try:
            return keyring.get_password(self.service_name, key)
        except keyring.errors.NoKeyringError as e:
            self.logger.error("No keyring backend found when trying to retrieve item.")
            raise TokenStorageError("No keyring backend available.") from e
        except keyring.errors.KeyringError as e:
            self.logger.error("Failed to retrieve item from keyring", key=key, error=str(e))
            raise TokenStorageError(f"Failed to retrieve item from keyring for key '{key}': {e}") from e

    async def _delete_item(self, key: str) -> None:
        try:
            keyring.delete_password(self.service_name, key)
            self.logger.debug("Deleted item from keyring", key=key)
        except keyring.errors.PasswordDeleteError:
            # Nothing stored under this key; deleting is idempotent.
            self.logger.debug("Item not present in keyring, nothing to delete", key=key)
        except keyring.errors.NoKeyringError as e:
            self.logger.error("No keyring backend found when trying to delete item.")
            raise TokenStorageError("No keyring backend available.") from e
        except keyring.errors.KeyringError as e:
            self.logger.error("Failed to delete item from keyring", key=key, error=str(e))
            raise TokenStorageError(f"Failed to delete item from keyring for key '{key}': {e}") from e

    async def _read_session(self) -> tuple[Optional[str], Optional[str]]:
        key = self._get_key(self.SESSION_SUFFIX)
        raw = await self._get_item(key)
        if not raw:
            return None, None
        try:
            data = json.loads(raw)
            return data.get("access_token"), data.get("refresh_token")
        except (json.JSONDecodeError, AttributeError) as e:
            self.logger.warning("Failed to decode session entry from keyring, discarding it", error=str(e))
            await self._delete_item(key)
            return None, None

    async def _write_session(self, access_token: Optional[str], refresh_token: Optional[str]) -> None:
        payload = json.dumps({"access_token": access_token, "refresh_token": refresh_token})
        await self._store_item(self._get_key(self.SESSION_SUFFIX), payload)

    async def get_access_token(self) -> Optional[str]:
        return (await self._read_session())[0]

    async def get_refresh_token(self) -> Optional[str]:
        return (await self._read_session())[1]

    async def set_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        async with self._write_lock:
            await self._write_session(access_token, refresh_token)

    async def set_access_token(self, token: str) -> None:
        async with self._write_lock:
            _, refresh_token = await self._read_session()
            await self._write_session(token, refresh_token)

    async def set_refresh_token(self, token: str) -> None:
        async with self._write_lock:
            access_token, _ = await self._read_session()
            await self._write_session(access_token, token)

    async def clear_tokens(self) -> None:
        async with self._write_lock:
            await asyncio.gather(
                self._delete_item(self._get_key(self.SESSION_SUFFIX)),
                self._delete_item(self._get_key(self.CODE_VERIFIER_SUFFIX)),
                self._delete_item(self._get_key(self.STATE_SUFFIX)),
            )

    async def get_code_verifier(self) -> Optional[str]:
        return await self._get_item(self._get_key(self.CODE_VERIFIER_SUFFIX))

    async def set_code_verifier(self, verifier: Optional[str]) -> None:
        key = self._get_key(self.CODE_VERIFIER_SUFFIX)
        if verifier:
            await self._store_item(key, verifier)
        else:
            await self._delete_item(key)

    async def get_state(self) -> Optional[str]:
        return await self._get_item(self._get_key(self.STATE_SUFFIX))

    async def set_state(self, state: Optional[str]) -> None:
        key = self._get_key(self.STATE_SUFFIX)
        if state:
            await self._store_item(key, state)
        else:
            await self._delete_item(key)


class EncryptedFileTokenStorage(PKCETokenStorage):
    """
    Stores tokens in a single Fernet-encrypted JSON file.

    File structure (before encryption):
      {
        "dashnex_access_token": "...",
        "dashnex_refresh_token": "...",
        "dashnex_code_verifier": "...",
        "dashnex_state": "..."
      }

    Every write decrypts the whole file, applies the change and replaces the file atomically
    (temp file + os.replace), so readers see either the old or the new token pair.
    WARNING: Managing the encryption key securely is critical.
    """

    def __init__(self, file_path: Path, encryption_key: bytes, key_prefix: str = "dashnex"):
        self.file_path = Path(file_path)
        self.prefix = key_prefix
        try:
            self.fernet = Fernet(encryption_key) # Must be a urlsafe-base64-encoded 32-byte key
        except ValueError as e:
            raise EncryptionError(f"Invalid Fernet encryption key: {e}") from e
        self._write_lock = asyncio.Lock()
        self.logger = logger.bind(storage_type="encrypted_file", file_path=str(self.file_path))

    @staticmethod
    def derive_key_from_password(password: str, salt: bytes) -> bytes:
        """Derives an encryption key from a password using PBKDF2HMAC-SHA256."""
        if not password:
            raise ValueError("Password cannot be empty for key derivation.")
        if not salt or len(salt) < 16:
            raise ValueError("Salt must be provided and be at least 16 bytes for key derivation.")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32, # Fernet key length
            salt=salt,
            iterations=480000,
        )
        return base64.urlsafe_b64encode(kdf.derive(password.encode()))

    def _key(self, name: str) -> str:
        return f"{self.prefix}_{name}"

    def _load(self) -> dict[str, Optional[str]]:
        if not self.file_path.exists():
            return {}
        try:
            decrypted = self.fernet.decrypt(self.file_path.read_bytes())
        except InvalidToken as e:
            self.logger.error("Failed to decrypt token file; wrong key or corrupted file.")
            raise EncryptionError(f"Could not decrypt token file {self.file_path}.") from e
        except OSError as e:
            raise TokenStorageError(f"Failed to read token file {self.file_path}: {e}") from e
        try:
            data = json.loads(decrypted)
        except json.JSONDecodeError as e:
            raise TokenStorageError(f"Token file {self.file_path} does not contain valid JSON.") from e
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, Optional[str]]) -> None:
        encrypted = self.fernet.encrypt(json.dumps(data).encode("utf-8"))
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self.file_path.parent, prefix=f".{self.file_path.name}.")
        try:
            with os.fdopen(fd, "wb") as tmp_file:
                tmp_file.write(encrypted)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.file_path)
        except OSError as e:
            Path(tmp_path).unlink(missing_ok=True)
            raise TokenStorageError(f"Failed to write token file {self.file_path}: {e}") from e
        self.logger.debug("Token file written.")

    async def _update(self, **changes: Optional[str]) -> None:
        async with self._write_lock:
            data = self._load()
            for name, value in changes.items():
                if value is None:
                    data.pop(self._key(name), None)
                else:
                    data[self._key(name)] = value
            self._save(data)

    async def _get(self, name: str) -> Optional[str]:
        return self._load().get(self._key(name))

    async def get_access_token(self) -> Optional[str]:
        return await self._get("access_token")

    async def get_refresh_token(self) -> Optional[str]:
        return await self._get("refresh_token")

    async def set_tokens(self, access_token: str, refresh_token: Optional[str]) -> None:
        await self._update(access_token=access_token, refresh_token=refresh_token)

    async def set_access_token(self, token: str) -> None:
        await self._update(access_token=token)

    async def set_refresh_token(self, token: str) -> None:
        await self._update(refresh_token=token)

    async def clear_tokens(self) -> None:
        await self._update(access_token=None, refresh_token=None, code_verifier=None, state=None)

    async def get_code_verifier(self) -> Optional[str]:
        return await self._get("code_verifier")

    async def set_code_verifier(self, verifier: Optional[str]) -> None:
        await self._update(code_verifier=verifier)

    async def get_state(self) -> Optional[str]:
        return await self._get("state")

    async def set_state(self, state: Optional[str]) -> None:
        await self._update(state=state)


def _load_or_create_salt(salt_path: Path) -> bytes:
    if salt_path.exists():
        return salt_path.read_bytes()
    salt = secrets.token_bytes(16)
    salt_path.parent.mkdir(parents=True, exist_ok=True)
    salt_path.write_bytes(salt)
    return salt


def get_token_storage(storage_config: StorageConfig) -> BaseTokenStorage:
    """
    Factory function to get a token storage instance based on configuration.
    The encrypted file backend reads its Fernet key from DASHNEX_AUTH_ENCRYPTION_KEY, or derives
    one from DASHNEX_AUTH_ENCRYPTION_PASSWORD with a salt kept next to the token file.
    """
    if storage_config.method == "memory":
        return MemoryTokenStorage()
    if storage_config.method == "keyring":
        return KeyringTokenStorage(storage_config)
    if storage_config.method == "file":
        file_path = storage_config.encrypted_token_file_path
        if not file_path:
            raise TokenStorageError("Encrypted token file path is not configured.")
        key_from_env = os.getenv(ENCRYPTION_KEY_ENV_VAR)
        password = os.getenv(ENCRYPTION_PASSWORD_ENV_VAR)
        if key_from_env:
            encryption_key = key_from_env.encode("ascii")
        elif password:
            salt = _load_or_create_salt(Path(f"{file_path}.salt"))
            encryption_key = EncryptedFileTokenStorage.derive_key_from_password(password, salt)
        else:
            raise TokenStorageError(
                f"Encrypted file storage needs {ENCRYPTION_KEY_ENV_VAR} or {ENCRYPTION_PASSWORD_ENV_VAR}."
            )
        return EncryptedFileTokenStorage(file_path, encryption_key, key_prefix=storage_config.key_prefix)
    logger.error("Unsupported token storage method", method=storage_config.method)
    raise ValueError(f"Unsupported token storage method: {storage_config.method}")
