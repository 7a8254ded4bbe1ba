"""Write-boundary validation for credentials.

These run explicitly wherever a user is created or changed; stores only
lowercase what they are given.
"""

from __future__ import annotations

import re
import unicodedata
from typing import Optional

MAX_PASSWORD_LENGTH = 128

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(value: str) -> str:
    return unicodedata.normalize("NFKC", value.strip().lower())


def validate_email(value: Optional[str]) -> list[str]:
    """Return format problems with an already-normalized address."""
    if not value:
        return ["can't be blank"]
    if len(value) > 254:
        return ["is too long"]
    local, sep, domain = value.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        return ["is invalid"]
    if not _EMAIL_LOCAL_PART.match(local):
        return ["is invalid"]
    labels = domain.split(".")
    if len(labels) < 2:
        return ["is invalid"]
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            return ["is invalid"]
    return []


def validate_password(
    password: Optional[str],
    confirmation: Optional[str],
    min_length: int = 8,
) -> dict[str, list[str]]:
    errors: dict[str, list[str]] = {}
    if not password:
        errors["password"] = ["can't be blank"]
    elif len(password) < min_length:
        errors["password"] = [f"is too short (minimum is {min_length} characters)"]
    elif len(password) > MAX_PASSWORD_LENGTH:
        errors["password"] = [
            f"is too long (maximum is {MAX_PASSWORD_LENGTH} characters)"
        ]
    if password != confirmation:
        errors["password_confirmation"] = ["doesn't match Password"]
    return errors
