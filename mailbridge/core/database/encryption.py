"""
Database Field Encryption

Encrypts stored IMAP/SMTP passwords at rest using Fernet (AES-128 CBC + HMAC).

Key rotation:
- DB_ENCRYPTION_KEY is the primary key, used for every new encryption
- DB_ENCRYPTION_KEY_OLD holds comma-separated retired keys, still accepted
  for decryption so rows written before a rotation stay readable

Ciphers are built lazily on first use so importing the models never
requires the key (migrations, tooling).
"""
import os
import logging
from typing import List, Optional

from cryptography.fernet import Fernet, MultiFernet, InvalidToken
from sqlalchemy.types import TypeDecorator, Text

logger = logging.getLogger(__name__)

primary_cipher: Optional[Fernet] = None
multi_cipher: Optional[MultiFernet] = None
old_ciphers: List[Fernet] = []


def _initialize_ciphers():
    """
    Build the primary cipher and the MultiFernet used for decryption.

    Raises:
        ValueError: If DB_ENCRYPTION_KEY is missing or a key is malformed
    """
    global primary_cipher, multi_cipher, old_ciphers

    encryption_key = os.getenv('DB_ENCRYPTION_KEY')
    if not encryption_key:
        logger.critical("DB_ENCRYPTION_KEY not set - cannot store mail credentials")
        raise ValueError(
            "DB_ENCRYPTION_KEY is required to store IMAP/SMTP passwords. "
            "Generate one with Fernet.generate_key()"
        )

    try:
        primary = Fernet(encryption_key.encode('utf-8'))
    except ValueError as e:
        raise ValueError(f"Invalid DB_ENCRYPTION_KEY: {e}") from e

    retired = []
    for i, old_key in enumerate(k.strip() for k in os.getenv('DB_ENCRYPTION_KEY_OLD', '').split(',')):
        if not old_key:
            continue
        try:
            retired.append(Fernet(old_key.encode('utf-8')))
            logger.info(f"Loaded old encryption key #{i+1} for rotation support")
        except ValueError as e:
            raise ValueError(f"Invalid old encryption key at position {i+1}") from e

    primary_cipher = primary
    old_ciphers = retired
    # MultiFernet encrypts with the first key and decrypts with any
    multi_cipher = MultiFernet([primary] + retired)
    logger.info(f"Credential encryption initialized with {1 + len(retired)} key(s)")


def _ensure_ciphers():
    if primary_cipher is None:
        _initialize_ciphers()


def reinitialize_cipher() -> bool:
    """
    Rebuild ciphers from the environment.
    Useful when environment variables are set after module import.

    Returns:
        True if the cipher was initialized, False otherwise
    """
    try:
        _initialize_ciphers()
        return True
    except ValueError as e:
        logger.error(f"Failed to reinitialize encryption cipher: {e}")
        return False


def generate_encryption_key() -> str:
    """Generate a new Fernet key suitable for DB_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode('utf-8')


class EncryptedText(TypeDecorator):
    """
    Encrypted text column type.

    Usage:
        class MailCredential(Base):
            imap_password = Column(EncryptedText)

    Storage format: Fernet token (URL-safe base64) stored as TEXT.
    """

    impl = Text
    cache_ok = True

    def process_bind_param(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        _ensure_ciphers()
        return primary_cipher.encrypt(value.encode('utf-8')).decode('utf-8')

    def process_result_value(self, value: Optional[str], dialect) -> Optional[str]:
        if value is None:
            return None
        _ensure_ciphers()
        try:
            return multi_cipher.decrypt(value.encode('utf-8')).decode('utf-8')
        except InvalidToken:
            # Unknown key: credentials must be re-entered
            logger.error("Failed to decrypt credential - no matching key found")
            return None
