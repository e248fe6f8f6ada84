from __future__ import annotations

import unicodedata
from typing import List

from tenantgate.service.errors import WeakPasswordError

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

WEAK_PASSWORDS = frozenset(
    {
        "password",
        "123456",
        "123456789",
        "qwerty",
        "abc123",
        "password123",
        "admin",
        "letmein",
        "welcome",
        "monkey",
        "12345678",
        "qwerty123",
        "1q2w3e4r",
        "admin123",
        "root",
        "toor",
        "pass",
        "test",
        "guest",
        "user",
    }
)


def _is_symbol(char: str) -> bool:
    # Unicode punctuation (P*) and symbol (S*) categories
    return unicodedata.category(char)[:1] in {"P", "S"}


def password_violations(password: str) -> List[str]:
    """Return every rule the password breaks; empty when it is acceptable."""
    problems: List[str] = []
    if len(password) < MIN_PASSWORD_LENGTH:
        problems.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(password) > MAX_PASSWORD_LENGTH:
        problems.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not any(char.isupper() for char in password):
        problems.append("password must contain an uppercase letter")
    if not any(char.islower() for char in password):
        problems.append("password must contain a lowercase letter")
    if not any(char.isdigit() for char in password):
        problems.append("password must contain a digit")
    if not any(_is_symbol(char) for char in password):
        problems.append("password must contain a symbol")
    if password.lower() in WEAK_PASSWORDS:
        problems.append("password is too common")
    return problems


def validate_password(password: str) -> str:
    """Raise :class:`WeakPasswordError` unless ``password`` satisfies the policy."""
    problems = password_violations(password)
    if problems:
        raise WeakPasswordError(problems[0], detail={"violations": problems})
    return password
