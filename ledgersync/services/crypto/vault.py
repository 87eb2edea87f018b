from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
from typing import Final

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ledgersync.core.config import get_settings
from ledgersync.core.errors import CryptoError


_NONCE_BYTES: Final[int] = 12
_VERSION_PREFIX: Final[str] = "v1:"


class CredentialVault:
    """AES-256-GCM sealing for connection credentials.

    Ciphertext is ``v1:`` followed by base64(nonce || ciphertext || tag). The
    key is derived from the configured secret with HMAC-SHA256 over a purpose
    label, which is also bound as associated data, so ciphertexts produced
    under another label or secret fail authentication instead of decrypting
    to garbage.
    """

    def __init__(self, secret: str, *, context: str) -> None:
        if not secret or not secret.strip():
            raise CryptoError("credential vault key is not configured")
        master_key = _decode_secret(secret)
        self._aad = context.encode("utf-8")
        self._aesgcm = AESGCM(_derive_key(master_key, context=context))

    def encrypt(self, plaintext: str) -> str:
        if not isinstance(plaintext, str):
            raise CryptoError("only text credentials can be sealed")
        nonce = os.urandom(_NONCE_BYTES)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), self._aad)
        return _VERSION_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        if not ciphertext or not ciphertext.startswith(_VERSION_PREFIX):
            raise CryptoError("unrecognized credential ciphertext format")
        try:
            payload = base64.b64decode(ciphertext[len(_VERSION_PREFIX):], validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CryptoError("credential ciphertext is not valid base64") from exc
        if len(payload) <= _NONCE_BYTES:
            raise CryptoError("credential ciphertext is truncated")
        nonce, sealed = payload[:_NONCE_BYTES], payload[_NONCE_BYTES:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, sealed, self._aad)
        except InvalidTag as exc:
            # Tampering or a key rotation mismatch; never fall back to the raw value.
            raise CryptoError("credential ciphertext failed authentication") from exc
        return plaintext.decode("utf-8")


def _decode_secret(value: str) -> bytes:
    # Hex first, then base64; anything else is used as a passphrase.
    stripped = value.strip()
    try:
        return bytes.fromhex(stripped)
    except ValueError:
        pass
    try:
        return base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError):
        return stripped.encode("utf-8")


def _derive_key(master_key: bytes, *, context: str) -> bytes:
    return hmac.new(master_key, context.encode("utf-8"), hashlib.sha256).digest()


def get_credential_vault() -> CredentialVault:
    settings = get_settings()
    return CredentialVault(settings.credential_vault_key or "", context=settings.credential_vault_context)
