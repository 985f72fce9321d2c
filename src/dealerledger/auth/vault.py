"""
Credential vault — encrypts OAuth tokens at rest.

Tokens are sealed with AES-256-GCM (via ``cryptography``) under a master key
taken from configuration. Stored form is ``base64(nonce || ciphertext || tag)``
with a fresh 96-bit nonce per call.

The vault also reads tokens written before encryption was introduced.
Telling the two apart is a length/format heuristic and can misclassify
short or oddly formatted plaintext tokens; it exists only for the migration
window and should be removed once every stored token is encrypted.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dealerledger.errors import ConfigurationError, IntegrityError

logger = logging.getLogger("dealerledger.auth.vault")

NONCE_SIZE = 12  # 96 bits, recommended for AES-GCM
_MIN_ENCRYPTED_LENGTH = 32


class CredentialVault:
    """Symmetric authenticated encryption for stored tokens.

    Usage::

        vault = CredentialVault(config.security.token_encryption_key)
        stored = vault.encrypt(access_token)
        access_token = vault.decrypt(stored)
    """

    def __init__(self, master_key: str | None) -> None:
        self._master_key = master_key
        self._aead: AESGCM | None = None

    @staticmethod
    def generate_key() -> str:
        """Create a new base64-encoded 256-bit master key."""
        return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode()

    def _cipher(self) -> AESGCM:
        if self._aead is None:
            if not self._master_key:
                raise ConfigurationError("Token encryption key is not configured (FORTNOX_TOKEN_ENCRYPTION_KEY)")
            try:
                key = base64.b64decode(self._master_key, validate=True)
                self._aead = AESGCM(key)
            except (binascii.Error, ValueError) as e:
                raise ConfigurationError(f"Token encryption key is malformed: {e}") from e
        return self._aead

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token. A new random nonce is drawn for every call."""
        if not plaintext:
            raise ValueError("Cannot encrypt empty token")
        cipher = self._cipher()
        nonce = os.urandom(NONCE_SIZE)
        sealed = cipher.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Authenticate and decrypt a stored token.

        Raises:
            IntegrityError: If the data was tampered with or the key is wrong.
        """
        if not token:
            raise ValueError("Cannot decrypt empty token")
        cipher = self._cipher()
        try:
            combined = base64.b64decode(token, validate=True)
        except (binascii.Error, ValueError) as e:
            raise IntegrityError(f"Stored token is not valid base64: {e}") from e
        if len(combined) <= NONCE_SIZE:
            raise IntegrityError("Stored token is too short to contain a nonce")
        nonce, sealed = combined[:NONCE_SIZE], combined[NONCE_SIZE:]
        try:
            plaintext = cipher.decrypt(nonce, sealed, None)
        except InvalidTag as e:
            raise IntegrityError("Stored token failed authentication (tampered or wrong key)") from e
        return plaintext.decode("utf-8")

    @staticmethod
    def looks_encrypted(value: str) -> bool:
        """Best-effort guess whether ``value`` came from :meth:`encrypt`."""
        if not value or len(value) < _MIN_ENCRYPTED_LENGTH:
            return False
        try:
            decoded = base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError):
            return False
        return len(decoded) > NONCE_SIZE

    def needs_migration(self, value: str | None) -> bool:
        return bool(value) and not self.looks_encrypted(value)  # type: ignore[arg-type]

    def read_possibly_legacy_token(self, value: str) -> str:
        """Return the plaintext of a stored token, encrypted or legacy."""
        if not value:
            raise ValueError("Token is empty")
        if self.looks_encrypted(value):
            return self.decrypt(value)
        logger.warning("Token is stored as plaintext; it will be encrypted on the next update")
        return value
