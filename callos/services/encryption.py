"""
Encryption utilities for third-party credential storage.
"""
from typing import Optional

from cryptography.fernet import InvalidToken

from callos.config import settings
from callos.exceptions import CredentialError
from callos.logging_config import get_logger

logger = get_logger(__name__)


def encrypt_api_key(api_key: str) -> Optional[str]:
    """
    Encrypt a secret for storage.

    Args:
        api_key: Plain text API key, secret or OAuth token

    Returns:
        Encrypted value as string
    """
    if api_key is None:
        return None
    if api_key == "":
        return ""
    return settings.cipher.encrypt(api_key.encode()).decode()


def decrypt_api_key(encrypted_key: str) -> Optional[str]:
    """
    Decrypt a secret from storage.

    Args:
        encrypted_key: Encrypted value

    Returns:
        Decrypted plain text value

    Raises:
        CredentialError: If the value was not produced with the current key
    """
    if encrypted_key is None:
        return None
    if encrypted_key == "":
        return ""
    try:
        return settings.cipher.decrypt(encrypted_key.encode()).decode()
    except InvalidToken:
        logger.error("credential_decryption_failed")
        raise CredentialError("Failed to decrypt stored credential")
