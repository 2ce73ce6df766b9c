"""
Magic link token service.

Issues signed, time-boxed bearer tokens that let a group member open and
submit the availability form without logging in. Every token is shadowed by
a ``magic_tokens`` row so it can be revoked and its usage counted.
"""

import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt

from app.config import settings
from app.db.helpers import DatabaseError, execute_query, fetch_one
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

TOKEN_ALGORITHM = "HS256"
REQUIRED_CLAIMS = ["exp", "iat", "jti", "sub", "prompt_id"]

# Failure taxonomy recorded in analytics; callers only ever see a generic message.
INVALID_TOKEN = "invalid_token"
TOKEN_NOT_FOUND = "token_not_found"
TOKEN_REVOKED = "token_revoked"

STATUS_ACTIVE = "active"
STATUS_REVOKED = "revoked"
TOKEN_EXPIRED = "token_expired"
SERVER_ERROR = "server_error"


class MagicTokenError(Exception):
    """Raised when tokens cannot be issued or checked at all (e.g. no secret)."""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(message)
        self.recoverable = recoverable


@dataclass(slots=True)
class IssuedToken:
    token: str
    token_id: str
    expires_at: datetime


@dataclass(slots=True)
class TokenValidationResult:
    valid: bool
    reason: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)
    grace_used: bool = False

    @property
    def token_id(self) -> str | None:
        return self.claims.get("jti")

    @property
    def user_id(self) -> str | None:
        return self.claims.get("sub")

    @property
    def prompt_id(self) -> str | None:
        return self.claims.get("prompt_id")

    @property
    def name(self) -> str | None:
        return self.claims.get("name")

    @property
    def expires_at(self) -> datetime | None:
        exp = self.claims.get("exp")
        return datetime.fromtimestamp(exp, tz=UTC) if exp is not None else None


def _failure(reason: str, claims: dict[str, Any] | None = None) -> TokenValidationResult:
    return TokenValidationResult(valid=False, reason=reason, claims=claims or {})


class MagicTokenService:
    """Issue, validate and revoke magic link tokens."""

    def __init__(
        self,
        *,
        audience: str | None = None,
        issuer: str | None = None,
        grace_minutes: int | None = None,
        clock_tolerance_seconds: int | None = None,
    ):
        self.audience = audience or settings.MAGIC_TOKEN_AUDIENCE
        self.issuer = issuer or settings.MAGIC_TOKEN_ISSUER
        self.grace_period = timedelta(
            minutes=settings.MAGIC_TOKEN_GRACE_MINUTES if grace_minutes is None else grace_minutes
        )
        self.leeway = timedelta(
            seconds=(
                settings.MAGIC_TOKEN_CLOCK_TOLERANCE_SECONDS
                if clock_tolerance_seconds is None
                else clock_tolerance_seconds
            )
        )

    def _secret(self) -> str:
        try:
            return settings.magic_token_secret()
        except RuntimeError as e:
            raise MagicTokenError(str(e)) from e

    async def generate_token(
        self,
        user_id: str,
        prompt_id: str,
        *,
        name: str | None = None,
        expiry_hours: float | None = None,
    ) -> IssuedToken:
        """
        Sign a token for ``user_id`` scoped to ``prompt_id`` and persist its shadow record.

        Args:
            user_id: External user identifier (token subject)
            prompt_id: Prompt the token grants access to
            name: Display name echoed back to the form
            expiry_hours: Lifetime; defaults to MAGIC_TOKEN_EXPIRY_HOURS

        Returns:
            IssuedToken with the encoded token, its id and expiry
        """
        hours = settings.MAGIC_TOKEN_EXPIRY_HOURS if expiry_hours is None else expiry_hours
        issued_at = datetime.now(UTC)
        expires_at = issued_at + timedelta(hours=hours)
        token_id = secrets.token_hex(32)

        claims = {
            "jti": token_id,
            "sub": user_id,
            "prompt_id": prompt_id,
            "aud": self.audience,
            "iss": self.issuer,
            "iat": issued_at,
            "exp": expires_at,
        }
        if name:
            claims["name"] = name

        token = jwt.encode(claims, self._secret(), algorithm=TOKEN_ALGORITHM)

        await execute_query(
            """
            INSERT INTO magic_tokens (token_id, user_id, prompt_id, expires_at)
            VALUES (%s, %s, %s, %s)
            """,
            (token_id, user_id, prompt_id, expires_at),
        )

        logger.info(
            "Magic token issued",
            token_id=token_id,
            user_id=user_id,
            prompt_id=prompt_id,
            expires_at=expires_at.isoformat(),
        )
        return IssuedToken(token=token, token_id=token_id, expires_at=expires_at)

    def _decode(self, token: str, *, verify_exp: bool = True) -> dict[str, Any]:
        return jwt.decode(
            token,
            self._secret(),
            algorithms=[TOKEN_ALGORITHM],
            audience=self.audience,
            issuer=self.issuer,
            leeway=self.leeway,
            options={"require": REQUIRED_CLAIMS, "verify_exp": verify_exp},
        )

    async def _get_record(self, token_id: str) -> dict[str, Any] | None:
        return await fetch_one(
            """
            SELECT token_id, user_id, prompt_id, expires_at, status, usage_count
            FROM magic_tokens
            WHERE token_id = %s
            """,
            (token_id,),
        )

    async def _record_usage(self, token_id: str) -> None:
        await execute_query(
            """
            UPDATE magic_tokens
            SET usage_count = usage_count + 1, last_used_at = NOW()
            WHERE token_id = %s
            """,
            (token_id,),
        )

    async def validate_token(
        self,
        token: str,
        *,
        form_loaded_at: datetime | None = None,
        now: datetime | None = None,
    ) -> TokenValidationResult:
        """
        Check signature, audience, issuer and expiry, then the shadow record.

        A token that has just expired is still honoured when the form was
        loaded before expiry and we are inside the grace window.
        """
        try:
            claims = self._decode(token)
        except jwt.ExpiredSignatureError:
            return await self._validate_within_grace(token, form_loaded_at, now)
        except jwt.InvalidTokenError as e:
            logger.info("Magic token rejected", reason=INVALID_TOKEN, error=str(e))
            return _failure(INVALID_TOKEN)

        try:
            record = await self._get_record(claims["jti"])
            if record is None:
                return _failure(TOKEN_NOT_FOUND, claims)
            if record["status"] == STATUS_REVOKED:
                return _failure(TOKEN_REVOKED, claims)

            await self._record_usage(claims["jti"])
        except DatabaseError as e:
            logger.error("Magic token lookup failed", token_id=claims.get("jti"), error=str(e))
            return _failure(SERVER_ERROR, claims)

        return TokenValidationResult(valid=True, claims=claims)

    async def _validate_within_grace(
        self, token: str, form_loaded_at: datetime | None, now: datetime | None
    ) -> TokenValidationResult:
        if form_loaded_at is None:
            return _failure(TOKEN_EXPIRED, self._unverified_claims(token))

        # Signature, audience and issuer must still hold; only expiry is relaxed.
        try:
            claims = self._decode(token, verify_exp=False)
        except jwt.InvalidTokenError:
            return _failure(INVALID_TOKEN)

        try:
            record = await self._get_record(claims["jti"])
            if record is None:
                return _failure(TOKEN_NOT_FOUND, claims)
            if record["status"] == STATUS_REVOKED:
                return _failure(TOKEN_REVOKED, claims)

            expires_at = record["expires_at"]
            current = now or datetime.now(UTC)
            loaded_at = form_loaded_at if form_loaded_at.tzinfo else form_loaded_at.replace(tzinfo=UTC)

            if loaded_at >= expires_at or current > expires_at + self.grace_period:
                return _failure(TOKEN_EXPIRED, claims)

            await self._record_usage(claims["jti"])
        except DatabaseError as e:
            logger.error("Magic token grace lookup failed", token_id=claims.get("jti"), error=str(e))
            return _failure(SERVER_ERROR, claims)

        logger.info("Magic token accepted within grace period", token_id=claims["jti"])
        return TokenValidationResult(valid=True, claims=claims, grace_used=True)

    @staticmethod
    def _unverified_claims(token: str) -> dict[str, Any]:
        try:
            return jwt.decode(token, options={"verify_signature": False})
        except jwt.InvalidTokenError:
            return {}

    @staticmethod
    def extract_token_id(token: str) -> str | None:
        """Best-effort token id for analytics; the signature is not checked."""
        return MagicTokenService._unverified_claims(token).get("jti")

    async def get_token_prompt_id(self, token_id: str) -> str | None:
        record = await self._get_record(token_id)
        return str(record["prompt_id"]) if record else None

    async def revoke_token(self, token_id: str) -> bool:
        """Flip the shadow record to revoked. Returns False if unknown or already revoked."""
        updated = await execute_query(
            "UPDATE magic_tokens SET status = %s, revoked_at = NOW() WHERE token_id = %s AND status = %s",
            (STATUS_REVOKED, token_id, STATUS_ACTIVE),
        )
        if updated:
            logger.info("Magic token revoked", token_id=token_id)
        return updated > 0


magic_token_service = MagicTokenService()
