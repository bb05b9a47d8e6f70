from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from credwatch.core.config import get_settings
from credwatch.core.errors import StorageConfigError


def _build_fernet() -> Fernet:
    # Derive a stable Fernet key from the configured master secret; never persist plaintext.
    source = (get_settings().secrets_master_key or "").strip()
    if not source:
        raise StorageConfigError("SECRETS_MASTER_KEY is required to store or read encrypted credentials")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def encrypt_secret(secret: str) -> str:
    token = _build_fernet().encrypt(secret.encode("utf-8"))
    return str(token.decode("utf-8"))


def decrypt_secret(token: str) -> str:
    try:
        return _build_fernet().decrypt(token.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise StorageConfigError("stored secret cannot be decrypted with the configured master key") from exc


def mask_secret(secret: str | None) -> str | None:
    # Keep the last four characters so operators can tell keys apart.
    if not secret:
        return None
    if len(secret) <= 4:
        return "*" * len(secret)
    return "*" * (len(secret) - 4) + secret[-4:]
