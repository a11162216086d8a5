"""
StemHub Authentication Module

Validates JWT access tokens issued by the identity collaborator.
"""
from __future__ import annotations

from stemhub.auth.dependencies import require_valid_token
from stemhub.auth.tokens import (
    AccessCodeError,
    TokenClaims,
    create_access_token,
    validate_access_code,
)

__all__ = [
    "AccessCodeError",
    "TokenClaims",
    "create_access_token",
    "require_valid_token",
    "validate_access_code",
]
