import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from .config import settings

# Static salt: the derived key must stay stable across restarts.
_KEY_SALT = b"next-stock-salt-v1"


def _fernet() -> Fernet:
    """
    Integration credentials (email API key, WhatsApp tokens) are stored encrypted in
    `business_settings`. The key stays out of the DB; provide any passphrase via env:
      INTEGRATIONS_SECRET = <32+ random characters>
    A 32-byte Fernet key is derived from it with scrypt.
    """
    secret = settings.integrations_secret
    if not secret:
        raise RuntimeError("INTEGRATIONS_SECRET is not set")
    raw = hashlib.scrypt(secret.encode("utf-8"), salt=_KEY_SALT, n=2**14, r=8, p=1, dklen=32)
    return Fernet(base64.urlsafe_b64encode(raw))


def encrypt_secret(plaintext: str) -> str:
    if not plaintext:
        return ""
    token = _fernet().encrypt(plaintext.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_secret(token: str) -> str:
    if not token:
        return ""
    try:
        raw = _fernet().decrypt(token.encode("utf-8"))
    except InvalidToken:
        raise RuntimeError("failed to decrypt integration secret") from None
    return raw.decode("utf-8")
