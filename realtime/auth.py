"""
Bearer credential verification for the REST API and the WebSocket.

Tokens are JWTs signed with the shared secret from ``auth.jwt_secret``.
The user id is taken from ``sub`` (or ``userId`` for older clients).
"""
from __future__ import annotations

import structlog
from datetime import datetime, timedelta
from typing import Any, Optional

from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTClaimsError, JWTError

from core.errors import AuthenticationError
from models.schemas import utcnow

logger = structlog.get_logger()


class TokenVerifier:

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        audience: str = "",
        issuer: str = "",
        leeway: int = 10,
    ):
        if not secret:
            logger.warning("auth_secret_missing", detail="every bearer credential will be rejected")
        self._secret = secret
        self.algorithm = algorithm
        self.audience = audience or None
        self.issuer = issuer or None
        self.leeway = leeway

    @classmethod
    def from_config(cls, config: Any) -> "TokenVerifier":
        return cls(config.jwt_secret, config.jwt_algorithm, config.audience, config.issuer)

    def verify(self, token: Optional[str]) -> dict[str, Any]:
        """Decode and validate; returns the claims with ``user_id`` set."""
        if not self._secret:
            raise AuthenticationError("Authentication is not configured")
        if not token:
            raise AuthenticationError("Missing bearer credential")
        if token.lower().startswith("bearer "):
            token = token[7:].strip()
        try:
            claims = jwt.decode(
                token,
                self._secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_aud": self.audience is not None,
                         "verify_iss": self.issuer is not None,
                         "leeway": self.leeway},
            )
        except ExpiredSignatureError as e:
            raise AuthenticationError("Token expired") from e
        except JWTClaimsError as e:
            raise AuthenticationError(f"Invalid claims: {e}") from e
        except JWTError as e:
            raise AuthenticationError(f"Invalid token: {e}") from e

        user_id = claims.get("sub") or claims.get("userId")
        if not user_id:
            raise AuthenticationError("Token has no subject")
        claims["user_id"] = str(user_id)
        return claims

    def user_id(self, token: Optional[str]) -> str:
        return self.verify(token)["user_id"]

    def issue(self, user_id: str, expires_in: timedelta = timedelta(hours=1), **extra) -> str:
        """Mint a token for ``user_id``. Used by tooling and tests."""
        if not self._secret:
            raise ValueError("Cannot issue tokens without a signing secret")
        now: datetime = utcnow()
        claims: dict[str, Any] = {
            "sub": user_id,
            "iat": int(now.timestamp()),
            "exp": int((now + expires_in).timestamp()),
            **extra,
        }
        if self.audience:
            claims["aud"] = self.audience
        if self.issuer:
            claims["iss"] = self.issuer
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)
