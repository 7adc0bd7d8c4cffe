"""
Credential encryption and token inspection utilities.
"""
import base64
import os
from datetime import datetime
from typing import Optional, Tuple

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from jose import jwt, JWTError


AES_BLOCK_SIZE_BITS = 128


class CredentialDecryptionError(Exception):
    """Raised when a stored credential cannot be decrypted."""
    pass


def _load_key(key_base64: str) -> bytes:
    key = base64.b64decode(key_base64)
    if len(key) != 32:
        raise ValueError("Encryption key must be a base64 encoded 256-bit key")
    return key


def encrypt_credential(
    plain_text: str,
    key_base64: str,
    iv_base64: Optional[str] = None
) -> Tuple[str, str]:
    """
    Encrypt a credential with AES-256-CBC.

    Args:
        plain_text: Value to encrypt
        key_base64: Base64 encoded 256-bit key
        iv_base64: Base64 IV to reuse; a random IV is generated when omitted

    Returns:
        Tuple of (cipher_text_base64, iv_base64)
    """
    key = _load_key(key_base64)
    iv = base64.b64decode(iv_base64) if iv_base64 else os.urandom(16)

    padder = padding.PKCS7(AES_BLOCK_SIZE_BITS).padder()
    padded = padder.update(plain_text.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    encrypted = encryptor.update(padded) + encryptor.finalize()

    return base64.b64encode(encrypted).decode("ascii"), base64.b64encode(iv).decode("ascii")


def decrypt_credential(cipher_text_base64: str, key_base64: str, iv_base64: str) -> str:
    """Decrypt a credential produced by encrypt_credential."""
    try:
        key = _load_key(key_base64)
        iv = base64.b64decode(iv_base64)

        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(base64.b64decode(cipher_text_base64)) + decryptor.finalize()

        unpadder = padding.PKCS7(AES_BLOCK_SIZE_BITS).unpadder()
        return (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
    except ValueError as e:
        raise CredentialDecryptionError(f"Could not decrypt stored credential: {e}")


def get_token_expiry(access_token: str) -> Optional[datetime]:
    """
    Read the expiry of a JWT access token without verifying its signature.

    Returns:
        Naive UTC expiry datetime, or None when the token is opaque or has no exp claim
    """
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError:
        return None

    exp = claims.get("exp")
    if exp is None:
        return None
    return datetime.utcfromtimestamp(int(exp))
