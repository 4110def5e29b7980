"""
Bearer token verification for API callers.
Tokens are HS256 JWTs issued by the external identity provider.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from authlib.jose import jwt
from authlib.jose.errors import JoseError

from config import Settings
from errors import AuthError, ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Identity:
    user_id: str
    email: Optional[str] = None


class IdentityVerifier:
    def __init__(self, settings: Settings):
        self.secret = settings.jwt_secret
        self.audience = settings.jwt_audience

    def verify(self, authorization: Optional[str]) -> Identity:
        """Resolve an Authorization header to a verified identity."""
        if not authorization or not authorization.startswith("Bearer "):
            raise AuthError("Authentication required. Please sign in.")
        token = authorization[len("Bearer "):].strip()
        if not token:
            raise AuthError("Authentication required. Please sign in.")

        if not self.secret:
            raise ConfigurationError("Server configuration error", status_code=503)

        claims_options = {"sub": {"essential": True}, "exp": {"essential": True}}
        if self.audience:
            claims_options["aud"] = {"essential": True, "value": self.audience}

        try:
            claims = jwt.decode(token, self.secret.encode(), claims_options=claims_options)
            claims.validate()
        except JoseError as e:
            logger.warning(f"Rejected bearer token: {e.error}")
            raise AuthError("Invalid or expired session. Please sign in again.")
        except ValueError as e:
            # Malformed token segments
            logger.warning(f"Rejected bearer token: {e}")
            raise AuthError("Invalid or expired session. Please sign in again.")

        return Identity(user_id=str(claims["sub"]), email=claims.get("email"))
