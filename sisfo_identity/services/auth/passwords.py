from __future__ import annotations

import asyncio
import hashlib
import secrets
import string

import bcrypt

from sisfo_identity.core.config import Settings, get_settings
from sisfo_identity.core.errors import InvalidInputError


# Frequently breached passwords rejected regardless of complexity settings.
COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "p@ssw0rd",
        "passw0rd!",
        "12345678",
        "123456789",
        "1234567890",
        "qwerty123",
        "qwerty123!",
        "iloveyou",
        "admin123",
        "admin123!",
        "welcome1",
        "welcome123!",
        "letmein1",
        "abc12345",
    }
)
_SYMBOLS = set(string.punctuation)

# bcrypt only considers the first 72 bytes of input.
_BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:_BCRYPT_MAX_BYTES]


def hash_password(password: str, *, rounds: int | None = None) -> str:
    # Per-hash salt with a configurable cost factor.
    cost = rounds if rounds is not None else get_settings().bcrypt_rounds
    return bcrypt.hashpw(_encode(password), bcrypt.gensalt(rounds=cost)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    # bcrypt.checkpw compares digests in constant time.
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
    except ValueError:
        return False


async def hash_password_async(password: str, *, rounds: int | None = None) -> str:
    # Keep the event loop responsive while bcrypt burns CPU.
    return await asyncio.to_thread(hash_password, password, rounds=rounds)


async def verify_password_async(password: str, password_hash: str) -> bool:
    return await asyncio.to_thread(verify_password, password, password_hash)


def validate_password_strength(password: str, settings: Settings | None = None) -> None:
    # Raise InvalidInputError with a machine-readable reason on the first failed rule.
    settings = settings or get_settings()
    if len(password) < settings.password_min_length:
        raise _weak("too_short", f"password must be at least {settings.password_min_length} characters")
    if password.lower() in COMMON_PASSWORDS:
        raise _weak("common_password", "password is too common")
    if not settings.password_require_complexity:
        return
    if not any(char.isupper() for char in password):
        raise _weak("missing_upper", "password must contain an upper-case letter")
    if not any(char.islower() for char in password):
        raise _weak("missing_lower", "password must contain a lower-case letter")
    if not any(char.isdigit() for char in password):
        raise _weak("missing_digit", "password must contain a digit")
    if not any(char in _SYMBOLS for char in password):
        raise _weak("missing_symbol", "password must contain a symbol")


def _weak(reason: str, message: str) -> InvalidInputError:
    return InvalidInputError(message, details={"reason": reason})


def generate_reset_token() -> str:
    # 32 bytes of entropy, URL-safe for links.
    return secrets.token_urlsafe(32)


def hash_reset_token(token: str) -> str:
    # Reset tokens are looked up by digest; plaintext never reaches the database.
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_initial_password() -> str:
    # Random password that satisfies the complexity rules for provisioned accounts.
    core = secrets.token_urlsafe(12)
    return f"{core}Aa1!"
