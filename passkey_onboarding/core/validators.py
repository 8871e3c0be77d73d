"""Input validation helpers for registration data."""
from __future__ import annotations

_FORBIDDEN_CHARS = "<>\"'`;&|$"


def normalize_username(raw: str) -> str:
    """Normalize and validate username.

    Args:
        raw: Raw username input

    Returns:
        Normalized username

    Raises:
        ValueError: If username is invalid
    """
    if not isinstance(raw, str):
        raise ValueError("Username is required")
    normalized = "".join(char for char in raw.lower().strip() if char.isalnum() or char in {".", "-", "_"})

    if len(normalized) < 3:
        raise ValueError("Username must be at least 3 characters")
    if len(normalized) > 64:
        raise ValueError("Username must not exceed 64 characters")
    if normalized[0] in {".", "-", "_"} or normalized[-1] in {".", "-", "_"}:
        raise ValueError("Username cannot start or end with special characters")

    return normalized


def validate_label(value: str, field: str, max_length: int = 128) -> str:
    """Validate a free-text label such as a display name or credential nickname.

    Returns:
        Trimmed value

    Raises:
        ValueError: If empty, too long or containing markup characters
    """
    if not isinstance(value, str):
        raise ValueError(f"{field} is required")
    value = value.strip()
    if not value:
        raise ValueError(f"{field} is required")
    if len(value) > max_length:
        raise ValueError(f"{field} exceeds maximum length")
    if any(char in value for char in _FORBIDDEN_CHARS):
        raise ValueError(f"{field} contains invalid characters")
    return value
