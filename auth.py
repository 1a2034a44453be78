"""
Signup and login on top of StorageService.

Passwords are stored as SHA-256 hex digests. Rows written before hashing
was introduced still hold plaintext; those are accepted once and upgraded
to a digest on the first successful login.
"""

import hmac
import logging
import re
from hashlib import sha256
from typing import Optional

from schemas import User
from statements import normalize_email
from storage import StorageService

logger = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2
MIN_PASSWORD_LENGTH = 6

_DIGEST = re.compile(r"^[0-9a-f]{64}$")


class AuthError(ValueError):
    pass


def hash_password(pw: str, salt: str = "") -> str:
    return sha256((pw + salt).encode()).hexdigest()


def verify_password(pw: str, digest: str, salt: str = "") -> bool:
    return hmac.compare_digest(hash_password(pw, salt).encode(), digest.encode())


def is_hashed(value: str) -> bool:
    return bool(_DIGEST.match(value or ""))


async def signup(storage: StorageService, name: str, email: str, password: str, salt: str = "") -> User:
    name = (name or "").strip()
    email = normalize_email(email or "")
    if not name or not email or not password:
        raise AuthError("All fields are required")
    if len(name) < MIN_NAME_LENGTH:
        raise AuthError(f"Name must be at least {MIN_NAME_LENGTH} characters")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    async with storage.write_lock:
        if await storage.get_user_by_email(email) is not None:
            raise AuthError("Email already registered")
        user = await storage.create_user(name=name, email=email, password=hash_password(password, salt))

    storage.set_current_user(user)
    logger.info(f"User {user.id} signed up")
    return user


async def login(storage: StorageService, email: str, password: str, salt: str = "") -> Optional[User]:
    if not email or not password:
        return None

    user = await storage.get_user_by_email(email)
    if user is None:
        logger.info("Login failed: user not found")
        return None

    if is_hashed(user.password):
        valid = verify_password(password, user.password, salt)
    else:
        valid = hmac.compare_digest(password.encode(), user.password.encode())
        if valid:
            upgraded = await storage.update_user(user.id, {"password": hash_password(password, salt)})
            if upgraded is None:
                logger.info(f"Login failed: user {user.id} removed before password upgrade")
                return None
            user = upgraded
            logger.info(f"Upgraded legacy password for {user.id}")

    if not valid:
        logger.info("Login failed: invalid password")
        return None
    return await storage.login(user.email, user.password)
