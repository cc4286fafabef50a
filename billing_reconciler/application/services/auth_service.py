from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, status
from jose import JWTError, jwt

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class AuthenticatedUser:
    user_id: str
    email: Optional[str] = None


class UserAuthService:
    """Verifies bearer tokens issued to app users by the identity provider."""

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        audience: Optional[str] = None,
    ) -> None:
        if not secret_key:
            raise RuntimeError("AUTH_JWT_SECRET is not configured.")
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._audience = audience

    def verify_token(self, token: str) -> AuthenticatedUser:
        options = {"verify_aud": self._audience is not None}
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                audience=self._audience,
                options=options,
            )
        except JWTError as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized") from exc
        user_id = payload.get("sub")
        if not user_id:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
        return AuthenticatedUser(user_id=str(user_id), email=payload.get("email"))

    def issue_token(self, user_id: str, email: Optional[str] = None, exp_minutes: int = 60) -> str:
        """Mint a token the same shape the identity provider issues; used by tooling and tests."""
        now = datetime.now(tz=timezone.utc)
        payload = {"sub": user_id, "exp": now + timedelta(minutes=exp_minutes)}
        if email:
            payload["email"] = email
        if self._audience:
            payload["aud"] = self._audience
        return jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
