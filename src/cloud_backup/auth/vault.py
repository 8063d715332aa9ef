"""Encrypted-at-rest store of per-provider credentials."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel

from ..exceptions import (
    CredentialError,
    CredentialNotFoundError,
    DecryptionError,
    VaultLockedError,
)
from ..utils.encryption import DEFAULT_ITERATIONS, EncryptionManager
from ..utils.locks import ReadWriteLock

logger = logging.getLogger(__name__)

DEFAULT_VAULT_FILE = Path.home() / ".cloud_backup" / "credentials.enc"


class Credential(BaseModel):
    """Opaque key / secret / redirect triple for one provider.

    Depending on the provider this carries OAuth client credentials, an
    access key pair or a container address.
    """
    provider: str
    key: str = ""
    secret: str = ""
    redirect_url: str = ""


class CredentialVault:
    """Credential map encrypted under a single master password.

    The whole map is one encrypted blob. Every operation reads and decrypts
    the file; mutations re-encrypt and replace it atomically, so a reader
    never sees a partially written vault.
    """

    def __init__(
        self,
        master_password: Optional[str],
        vault_file: Optional[Path] = None,
        iterations: int = DEFAULT_ITERATIONS,
    ):
        """Initialize credential vault.

        Args:
            master_password: Passphrase that unlocks the vault
            vault_file: Location of the encrypted credential file
            iterations: PBKDF2 work factor

        Raises:
            VaultLockedError: If no master password was given
            CredentialError: If the vault directory cannot be created
        """
        if not master_password:
            raise VaultLockedError("vault is locked: a master password is required")

        self._encryption = EncryptionManager(master_password, iterations=iterations)
        self.vault_file = Path(vault_file or DEFAULT_VAULT_FILE).expanduser()
        self._lock = ReadWriteLock()

        try:
            self.vault_file.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        except OSError as e:
            raise CredentialError(f"failed to create credentials directory: {e}") from e

    def _read(self) -> Dict[str, Credential]:
        """Load and decrypt the credential map. Caller holds the lock."""
        if not self.vault_file.exists():
            return {}

        try:
            blob = self.vault_file.read_bytes()
        except OSError as e:
            raise CredentialError(f"failed to read credentials file: {e}") from e

        if not blob.strip():
            return {}

        try:
            plaintext = self._encryption.decrypt(blob.strip())
        except DecryptionError as e:
            raise CredentialError(
                f"failed to decrypt credentials (wrong master password?): {e}"
            ) from e

        try:
            data = json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise CredentialError(f"failed to parse credentials: {e}") from e

        return {name: Credential(**entry) for name, entry in data.items()}

    def _write(self, credentials: Dict[str, Credential]):
        """Encrypt and atomically replace the vault file. Caller holds the lock."""
        data = json.dumps(
            {name: cred.model_dump() for name, cred in credentials.items()}
        ).encode("utf-8")
        blob = self._encryption.encrypt(data)

        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.vault_file.parent), prefix=".credentials-", suffix=".tmp"
        )
        try:
            os.chmod(tmp_path, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(blob)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.vault_file)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise CredentialError(f"failed to write credentials file: {e}") from e

    def store_credential(self, credential: Credential):
        """Add or replace the entry for ``credential.provider``."""
        if not credential.provider:
            raise CredentialError("credential provider name must not be empty")

        with self._lock.write_locked():
            credentials = self._read()
            credentials[credential.provider] = credential
            self._write(credentials)
        logger.info(f"Stored credentials for provider {credential.provider}")

    def get_credential(self, provider: str) -> Credential:
        """Return the entry for ``provider``.

        Raises:
            CredentialNotFoundError: If the vault has no such entry
        """
        with self._lock.read_locked():
            credentials = self._read()

        if provider not in credentials:
            raise CredentialNotFoundError(provider)
        return credentials[provider]

    def delete_credential(self, provider: str) -> bool:
        """Remove the entry for ``provider``.

        Returns:
            True if an entry was removed
        """
        with self._lock.write_locked():
            credentials = self._read()
            if provider not in credentials:
                return False
            del credentials[provider]
            self._write(credentials)
        logger.info(f"Deleted credentials for provider {provider}")
        return True

    def list_providers(self) -> List[str]:
        """Names of all providers with stored credentials."""
        with self._lock.read_locked():
            return sorted(self._read())
