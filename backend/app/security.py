import hashlib
import re
from typing import Optional
from passlib.context import CryptContext

_pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=10)

_PIN_RE = re.compile(r"^[0-9]{6}$")


def hash_password(password: str) -> str:
    return _pwd_context.hash(password)


def verify_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.verify(password, hashed)


def needs_rehash(hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return _pwd_context.needs_update(hashed)


def hash_session_token(token: str) -> str:
    # Store sessions as a one-way hash so a DB leak doesn't immediately grant access.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_valid_pin_format(pin: Optional[str]) -> bool:
    return bool(pin) and bool(_PIN_RE.match(pin))


def hash_pin(pin: str) -> str:
    # Same bcrypt context as passwords; PINs never leave the server in clear.
    return _pwd_context.hash(pin)


def verify_pin(pin: str, hashed: Optional[str]) -> bool:
    if not hashed or not pin:
        return False
    return _pwd_context.verify(pin, hashed)
