import base64
import hashlib
import json
import os
from typing import Any, Dict
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
import structlog

from services.config import settings
from services.errors import ConfigurationError

logger = structlog.get_logger()


class EncryptionService:
    """
    AES-256-GCM for connection credentials.

    Encrypted blobs are JSON objects ``{algorithm, iv, ciphertext, tag}``
    with base64 fields, so they can be stored as-is in a JSON column.
    """

    def __init__(self, secret: str = None):
        self.algorithm = 'aes-256-gcm'
        self.key_length = 32
        self.iv_length = 12
        self.auth_tag_length = 16

        secret = secret or settings.encryption_key
        if len(secret) < self.key_length:
            logger.warning("Encryption key is shorter than recommended 32 bytes")

        self.key = hashlib.scrypt(
            secret.encode('utf-8'),
            salt=b'semantic-catalog',
            n=16384,
            r=8,
            p=1,
            dklen=self.key_length
        )

    def encrypt(self, text: str) -> Dict[str, str]:
        iv = os.urandom(self.iv_length)
        # AESGCM appends the tag to the ciphertext
        combined = AESGCM(self.key).encrypt(iv, text.encode('utf-8'), None)
        return {
            "algorithm": self.algorithm,
            "iv": base64.b64encode(iv).decode("ascii"),
            "ciphertext": base64.b64encode(combined[:-self.auth_tag_length]).decode("ascii"),
            "tag": base64.b64encode(combined[-self.auth_tag_length:]).decode("ascii"),
        }

    def decrypt(self, blob: Dict[str, str]) -> str:
        if not isinstance(blob, dict) or blob.get("algorithm") != self.algorithm:
            raise ConfigurationError("Unsupported credential encryption format")
        try:
            iv = base64.b64decode(blob["iv"])
            ciphertext = base64.b64decode(blob["ciphertext"])
            tag = base64.b64decode(blob["tag"])
            plaintext = AESGCM(self.key).decrypt(iv, ciphertext + tag, None)
        except (KeyError, ValueError, InvalidTag) as e:
            logger.error("Decryption failed", error=type(e).__name__)
            raise ConfigurationError("Failed to decrypt connection credentials") from e
        return plaintext.decode('utf-8')

    def encrypt_json(self, value: Dict[str, Any]) -> Dict[str, str]:
        return self.encrypt(json.dumps(value))

    def decrypt_json(self, blob: Dict[str, str]) -> Dict[str, Any]:
        return json.loads(self.decrypt(blob))


# Singleton instance
encryption_service = EncryptionService()
