"""Resolve the caller of the service entrypoint."""

from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

import jwt

from .config import AuthConfig
from .errors import Unauthorized

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller; a service principal may act on every workflow."""

    user_id: Optional[str] = None
    service: bool = False

    def owns(self, owner_id: str) -> bool:
        return self.service or self.user_id == owner_id


SERVICE_PRINCIPAL = Principal(service=True)


def bearer_token(authorization: Optional[str]) -> str:
    header = (authorization or "").strip()
    if header[:7].lower() == "bearer ":
        return header[7:].strip()
    return ""


class Authenticator:
    def __init__(self, config: AuthConfig, leeway: int = 30) -> None:
        self.config = config
        self.leeway = leeway

    def _verify_user_token(self, token: str) -> Optional[str]:
        if not self.config.jwt_secret:
            return None
        try:
            claims = jwt.decode(
                token,
                self.config.jwt_secret,
                algorithms=["HS256"],
                audience=self.config.jwt_audience or None,
                options={"verify_aud": bool(self.config.jwt_audience)},
                leeway=self.leeway,
            )
        except jwt.PyJWTError as e:
            logger.debug(f"Rejected user token: {e}")
            return None
        subject = claims.get("sub")
        return str(subject) if subject else None

    def authenticate(self, authorization: Optional[str]) -> Principal:
        """Map an ``Authorization`` header to a :class:`Principal`.

        Raises:
            Unauthorized: When the header carries neither the service key
                nor a valid user token.
        """
        token = bearer_token(authorization)
        if not token:
            raise Unauthorized("Unauthorized")
        service_key = self.config.service_key
        if service_key and hmac.compare_digest(token, service_key):
            return SERVICE_PRINCIPAL
        user_id = self._verify_user_token(token)
        if user_id is None:
            raise Unauthorized("Unauthorized")
        return Principal(user_id=user_id)
