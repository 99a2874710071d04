"""Signed, purpose-bound tokens for password reset and reservation cancellation."""

from security.tokens import (
    PasswordResetClaims,
    ReservationCancelClaims,
    TokenKind,
    TokenService,
)

__all__ = [
    "PasswordResetClaims",
    "ReservationCancelClaims",
    "TokenKind",
    "TokenService",
]
