"""
Purpose-bound expiring tokens for unauthenticated actions.

Two kinds exist: password reset (24h) and reservation cancellation (48h).
Each is an HS256 JWT whose payload carries a `type` tag, the subject ids and
`iat`/`exp`. Validation is ordered: signature first, then expiry, then kind,
so a validly signed token for one purpose can never authorize another.

There is no revocation list: a token stays valid until it expires, even
after the action it authorizes has been performed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Optional, Union

import jwt

from core.config import Settings
from core.errors import AuthError, ConfigurationError, TokenErrorReason

logger = logging.getLogger("tokens")


class TokenKind(str, Enum):
    PASSWORD_RESET = "password-reset"
    RESERVATION_CANCEL = "reservation-cancel"


@dataclass(frozen=True)
class PasswordResetClaims:
    kind: ClassVar[TokenKind] = TokenKind.PASSWORD_RESET
    user_id: str

    def to_payload(self) -> dict[str, Any]:
        return {"userId": self.user_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "PasswordResetClaims":
        return cls(user_id=_require_str(payload, "userId"))


@dataclass(frozen=True)
class ReservationCancelClaims:
    kind: ClassVar[TokenKind] = TokenKind.RESERVATION_CANCEL
    reservation_id: str
    restaurant_id: str

    def to_payload(self) -> dict[str, Any]:
        return {"reservationId": self.reservation_id, "restaurantId": self.restaurant_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ReservationCancelClaims":
        return cls(
            reservation_id=_require_str(payload, "reservationId"),
            restaurant_id=_require_str(payload, "restaurantId"),
        )


TokenClaims = Union[PasswordResetClaims, ReservationCancelClaims]

# Every TokenKind must map to exactly one claims type
CLAIM_TYPES: dict[TokenKind, type] = {
    TokenKind.PASSWORD_RESET: PasswordResetClaims,
    TokenKind.RESERVATION_CANCEL: ReservationCancelClaims,
}


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise AuthError(TokenErrorReason.MALFORMED)
    return value


class TokenService:
    """
    Issues and validates typed tokens.

    Stateless: safe to share across requests and threads.

    Example:
        tokens = TokenService(secret="...")
        token = tokens.issue(ReservationCancelClaims("R1", "T1"))
        claims = tokens.validate(token, TokenKind.RESERVATION_CANCEL)
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        ttls: Optional[dict[TokenKind, timedelta]] = None,
    ):
        """
        Args:
            secret: Symmetric signing secret (required)
            algorithm: JWT HMAC algorithm
            ttls: Lifetime per kind; defaults to 24h reset / 48h cancel

        Raises:
            ConfigurationError: If the secret is empty
        """
        if not secret:
            raise ConfigurationError("A token signing secret is required")
        self._secret = secret
        self.algorithm = algorithm
        self.ttls = {
            TokenKind.PASSWORD_RESET: timedelta(hours=24),
            TokenKind.RESERVATION_CANCEL: timedelta(hours=48),
        }
        if ttls:
            self.ttls.update(ttls)

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenService":
        return cls(
            secret=settings.jwt_secret.get_secret_value(),
            algorithm=settings.jwt_algorithm,
            ttls={
                TokenKind.PASSWORD_RESET: timedelta(hours=settings.password_reset_ttl_hours),
                TokenKind.RESERVATION_CANCEL: timedelta(hours=settings.reservation_cancel_ttl_hours),
            },
        )

    def issue(self, claims: TokenClaims, ttl: Optional[timedelta] = None) -> str:
        """
        Sign a token for `claims`.

        The kind is taken from the claims type. `ttl` overrides the kind's
        fixed lifetime; expiry is absolute from issuance.
        """
        kind = claims.kind
        issued_at = datetime.now(timezone.utc)
        expires_at = issued_at + (ttl if ttl is not None else self.ttls[kind])
        payload = {
            "type": kind.value,
            **claims.to_payload(),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        token = jwt.encode(payload, self._secret, algorithm=self.algorithm)
        logger.info(f"Issued {kind.value} token expiring {expires_at.isoformat()}")
        return token

    def _decode(self, token: str) -> dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                options={"require": ["exp", "iat"]},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Rejected expired token")
            raise AuthError(TokenErrorReason.EXPIRED) from None
        except jwt.InvalidTokenError as exc:
            logger.warning(f"Rejected invalid token: {exc}")
            raise AuthError(TokenErrorReason.MALFORMED) from None

    def inspect(self, token: str) -> TokenClaims:
        """
        Validate signature and expiry, and return the typed claims for
        whatever kind the token carries.

        Raises:
            AuthError: MALFORMED, EXPIRED, or WRONG_KIND for an unknown tag
        """
        payload = self._decode(token)
        try:
            kind = TokenKind(payload.get("type"))
        except ValueError:
            logger.warning(f"Rejected token with unknown type {payload.get('type')!r}")
            raise AuthError(TokenErrorReason.WRONG_KIND) from None
        return CLAIM_TYPES[kind].from_payload(payload)

    def validate(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        """
        Validate a token for a specific purpose.

        Raises:
            AuthError: "Invalid token" (bad signature or unparsable),
                "Token expired", or "Invalid token type" (validly signed but
                issued for another purpose)
        """
        claims = self.inspect(token)
        if claims.kind is not expected_kind:
            logger.warning(
                f"Token type mismatch: expected {expected_kind.value}, got {claims.kind.value}"
            )
            raise AuthError(TokenErrorReason.WRONG_KIND)
        return claims

    # =========================================================================
    # Per-purpose helpers
    # =========================================================================

    def issue_password_reset(self, user_id: str) -> str:
        return self.issue(PasswordResetClaims(user_id=user_id))

    def validate_password_reset(self, token: str) -> PasswordResetClaims:
        return self.validate(token, TokenKind.PASSWORD_RESET)

    def issue_reservation_cancel(self, reservation_id: str, restaurant_id: str) -> str:
        return self.issue(ReservationCancelClaims(reservation_id=reservation_id, restaurant_id=restaurant_id))

    def validate_reservation_cancel(self, token: str) -> ReservationCancelClaims:
        return self.validate(token, TokenKind.RESERVATION_CANCEL)
