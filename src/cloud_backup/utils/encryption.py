"""Authenticated encryption for backup payloads and the credential vault."""

import base64
import binascii
import os
import secrets
from pathlib import Path
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import DecryptionError

SALT_SIZE = 16
NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
DEFAULT_ITERATIONS = 100000

ENCRYPTED_SUFFIX = ".encrypted"
DECRYPTED_SUFFIX = ".decrypted"


class EncryptionManager:
    """AES-256-GCM encryption keyed from a passphrase.

    Every call to :meth:`encrypt` draws a fresh salt and nonce, so the
    output is self-contained: ``base64(salt | nonce | ciphertext | tag)``.
    Anyone holding the passphrase can decrypt it without further key storage.
    """

    def __init__(self, passphrase: str, iterations: int = DEFAULT_ITERATIONS):
        """Initialize encryption manager.

        Args:
            passphrase: User passphrase or a key from :meth:`generate_key`
            iterations: PBKDF2 work factor

        Raises:
            ValueError: If the passphrase is empty
        """
        if not passphrase:
            raise ValueError("Encryption passphrase must not be empty")
        self._passphrase = passphrase.encode("utf-8")
        self.iterations = iterations

    @classmethod
    def generate_key(cls) -> str:
        """Generate a new random key.

        Returns:
            Base64 encoded 32-byte key
        """
        return base64.b64encode(secrets.token_bytes(KEY_SIZE)).decode("ascii")

    @classmethod
    def derive_key_from_password(
        cls, password: Union[str, bytes], salt: bytes, iterations: int = DEFAULT_ITERATIONS
    ) -> bytes:
        """Derive a 256-bit key from a password.

        Args:
            password: Password to derive key from
            salt: Per-ciphertext salt
            iterations: PBKDF2 work factor

        Returns:
            Raw key bytes
        """
        if isinstance(password, str):
            password = password.encode("utf-8")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(password)

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt data.

        Args:
            data: Plaintext, may be empty

        Returns:
            Base64 armored ciphertext
        """
        salt = os.urandom(SALT_SIZE)
        nonce = os.urandom(NONCE_SIZE)
        key = self.derive_key_from_password(self._passphrase, salt, self.iterations)
        sealed = AESGCM(key).encrypt(nonce, data, None)
        return base64.b64encode(salt + nonce + sealed)

    def decrypt(self, encoded_data: bytes) -> bytes:
        """Decrypt data produced by :meth:`encrypt`.

        Args:
            encoded_data: Base64 armored ciphertext

        Returns:
            Plaintext

        Raises:
            DecryptionError: If the input is malformed, tampered with or was
                encrypted under another passphrase
        """
        try:
            raw = base64.b64decode(encoded_data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"failed to decode base64: {e}") from e

        if len(raw) < SALT_SIZE + NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("ciphertext too short")

        salt = raw[:SALT_SIZE]
        nonce = raw[SALT_SIZE:SALT_SIZE + NONCE_SIZE]
        sealed = raw[SALT_SIZE + NONCE_SIZE:]
        key = self.derive_key_from_password(self._passphrase, salt, self.iterations)
        try:
            return AESGCM(key).decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise DecryptionError("failed to decrypt: authentication tag mismatch") from e

    def encrypt_file(self, source_path: Union[str, Path], output_dir: Optional[Path] = None) -> Path:
        """Encrypt a file into a side-car artifact.

        Args:
            source_path: File to encrypt
            output_dir: Directory for the artifact (next to the source by default)

        Returns:
            Path of the ``.encrypted`` artifact
        """
        source_path = Path(source_path)
        target_dir = output_dir or source_path.parent
        encrypted_path = target_dir / f"{source_path.name}{ENCRYPTED_SUFFIX}"

        encrypted = self.encrypt(source_path.read_bytes())
        _write_private(encrypted_path, encrypted)
        return encrypted_path

    def decrypt_file(self, encrypted_path: Union[str, Path], output_path: Optional[Path] = None) -> Path:
        """Decrypt a file produced by :meth:`encrypt_file`.

        Args:
            encrypted_path: Encrypted artifact
            output_path: Where to write the plaintext. Defaults to the artifact
                name with ``.encrypted`` stripped, or ``.decrypted`` appended

        Returns:
            Path of the decrypted file
        """
        encrypted_path = Path(encrypted_path)
        if output_path is None:
            if encrypted_path.name.endswith(ENCRYPTED_SUFFIX):
                output_path = encrypted_path.with_name(encrypted_path.name[:-len(ENCRYPTED_SUFFIX)])
                if output_path.exists():
                    output_path = encrypted_path.with_name(encrypted_path.name + DECRYPTED_SUFFIX)
            else:
                output_path = encrypted_path.with_name(encrypted_path.name + DECRYPTED_SUFFIX)

        decrypted = self.decrypt(encrypted_path.read_bytes())
        _write_private(Path(output_path), decrypted)
        return Path(output_path)


def _write_private(path: Path, data: bytes):
    """Write bytes to a file readable only by the owner."""
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
