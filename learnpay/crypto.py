import hashlib
import hmac
import json
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from learnpay.logging_config import get_logger

logger = get_logger("crypto")


class SensitiveDetailsCipher:
    """Encrypts provider refund details at rest.

    ``digest`` is deterministic so rows can be looked up by provider refund id
    without decrypting anything.
    """

    def __init__(self, encryption_key: Optional[str] = None, hash_secret: Optional[str] = None):
        if not encryption_key:
            logger.warning("generated_ephemeral_encryption_key")
            encryption_key = Fernet.generate_key().decode()
        self.fernet = Fernet(encryption_key)
        secret = hash_secret or encryption_key
        self.hash_secret = secret.encode() if isinstance(secret, str) else secret

    @classmethod
    def from_settings(cls, settings):
        return cls(settings.data_encryption_key, settings.data_hash_secret)

    def encrypt(self, details: dict) -> str:
        payload = json.dumps(details, sort_keys=True, default=str).encode()
        return self.fernet.encrypt(payload).decode()

    def decrypt(self, token: Optional[str]) -> dict:
        if not token:
            return {}
        try:
            return json.loads(self.fernet.decrypt(token.encode()))
        except InvalidToken:
            logger.error("refund_details_decrypt_failed")
            raise

    def digest(self, value: Optional[str]) -> Optional[str]:
        if not value:
            return None
        return hmac.new(self.hash_secret, str(value).encode(), hashlib.sha256).hexdigest()
