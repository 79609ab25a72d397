"""
Encryption utilities for backup artifacts.

Uses AES-GCM (single shot, whole payload in memory) with a 12-byte random
nonce prepended to the ciphertext. The key is supplied by a key provider
injected at construction, so callers decide where it comes from.
"""

import os
import binascii
from typing import Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..errors import ConfigurationError, CryptoError


NONCE_SIZE = 12
VALID_KEY_SIZES = (16, 24, 32)

KeyProvider = Callable[[], bytes]


def hex_key_provider(key_hex: str) -> KeyProvider:
    """
    Build a key provider from a hex-encoded key.

    Args:
        key_hex: Hex string of a 16, 24 or 32 byte key

    Returns:
        Callable returning the decoded key bytes
    """
    def provider() -> bytes:
        if not key_hex:
            raise ConfigurationError("AES key is not configured")
        try:
            return binascii.unhexlify(key_hex.strip())
        except (binascii.Error, ValueError) as e:
            raise ConfigurationError(f"AES key is not valid hex: {e}")
    return provider


def env_key_provider(variable: str = 'AES_KEY') -> KeyProvider:
    """Key provider reading a hex key from an environment variable."""
    def provider() -> bytes:
        return hex_key_provider(os.environ.get(variable, ''))()
    return provider


class ArtifactCipher:
    """Encrypts and decrypts backup artifacts with AES-GCM."""

    def __init__(self, key_provider: KeyProvider):
        """
        Initialize the cipher and validate the key.

        Args:
            key_provider: Callable returning the raw key bytes

        Raises:
            ConfigurationError: If the key is missing or has an invalid length
        """
        key = key_provider()
        if len(key) not in VALID_KEY_SIZES:
            raise ConfigurationError(
                f"AES key must be 16, 24 or 32 bytes, got {len(key)}"
            )
        self._aesgcm = AESGCM(key)
        self.key_size = len(key)

    def encrypt_bytes(self, plaintext: bytes) -> bytes:
        """Encrypt a payload; returns nonce + ciphertext."""
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aesgcm.encrypt(nonce, plaintext, None)

    def decrypt_bytes(self, data: bytes) -> bytes:
        """
        Decrypt a nonce-prefixed payload.

        Raises:
            CryptoError: If the payload is too short or fails authentication
        """
        if len(data) < NONCE_SIZE:
            raise CryptoError("Encrypted data is too short")

        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            return self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise CryptoError("Decryption failed: authentication tag mismatch")

    def encrypt_file(self, input_path: str, output_path: str) -> str:
        """
        Encrypt a file.

        Returns:
            output_path

        Raises:
            CryptoError: If the file cannot be read or written
        """
        try:
            with open(input_path, 'rb') as f:
                plaintext = f.read()
        except OSError as e:
            raise CryptoError(f"Failed to read {input_path}: {e}")

        _write_atomically(output_path, self.encrypt_bytes(plaintext))
        return output_path

    def decrypt_file(self, input_path: str, output_path: str) -> str:
        """
        Decrypt a file. Nothing is written unless decryption succeeds.

        Returns:
            output_path

        Raises:
            CryptoError: If reading, authentication or writing fails
        """
        try:
            with open(input_path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise CryptoError(f"Failed to read {input_path}: {e}")

        _write_atomically(output_path, self.decrypt_bytes(data))
        return output_path


def _write_atomically(path: str, data: bytes):
    partial_path = f"{path}.part"
    try:
        with open(partial_path, 'wb') as f:
            f.write(data)
        os.replace(partial_path, path)
    except OSError as e:
        if os.path.exists(partial_path):
            os.remove(partial_path)
        raise CryptoError(f"Failed to write {path}: {e}")
