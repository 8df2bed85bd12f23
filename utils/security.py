import secrets
from typing import Optional

# 48 bytes aleatórios -> 96 caracteres hex
TOKEN_BYTES = 48


def generate_token() -> str:
    return secrets.token_hex(TOKEN_BYTES)


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()
