"""
Content Vault

AES-256-GCM envelope encryption for message bodies stored in the mapping
table. The envelope is ``b64(nonce):b64(tag):b64(ciphertext)``. Values that
are not envelopes (older plaintext rows) pass through decrypt unchanged.
"""

import base64
import binascii
import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger(__name__)

NONCE_LENGTH = 16
TAG_LENGTH = 16


def _split_envelope(text: str):
    """Return (nonce, tag, ciphertext) bytes or None if text is not an envelope"""
    parts = text.split(":")
    if len(parts) != 3:
        return None
    try:
        nonce, tag, ciphertext = (base64.b64decode(p, validate=True) for p in parts)
    except (binascii.Error, ValueError):
        return None
    if len(nonce) != NONCE_LENGTH or len(tag) != TAG_LENGTH:
        return None
    return nonce, tag, ciphertext


class ContentVault:
    """Symmetric encryption keyed by SHA-256 of the configured secret"""

    def __init__(self, secret: str):
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        if not plaintext:
            return plaintext
        try:
            nonce = os.urandom(NONCE_LENGTH)
            sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        except Exception as e:
            logger.warning(f"⚠️  Encryption failed, storing plaintext: {e}")
            return plaintext

        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return ":".join(
            base64.b64encode(part).decode("ascii") for part in (nonce, tag, ciphertext)
        )

    def decrypt(self, text: Optional[str]) -> Optional[str]:
        """Plaintext for an envelope; anything else is returned unchanged"""
        if not text:
            return text
        envelope = _split_envelope(text)
        if envelope is None:
            return text

        nonce, tag, ciphertext = envelope
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None).decode("utf-8")
        except (InvalidTag, UnicodeDecodeError):
            return text

    @staticmethod
    def looks_encrypted(text: Optional[str]) -> bool:
        """Shape check only"""
        if not text or not isinstance(text, str):
            return False
        return _split_envelope(text) is not None
