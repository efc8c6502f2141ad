"""
Signed session tokens (HS256 JWT) bound to a user id.
"""

from calendar import timegm
from datetime import timedelta
from typing import Callable, Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from database import utcnow


class TokenClaims(BaseModel):
    user_id: str
    exp: int


class TokenIssuer:
    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        expires_minutes: int = 60 * 24,
        clock: Callable = utcnow,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.expires_minutes = expires_minutes
        self.clock = clock

    def issue(self, user_id) -> str:
        now = self.clock()
        payload = {
            "sub": str(user_id),
            "iat": now,
            "exp": now + timedelta(minutes=self.expires_minutes),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def verify(self, token: str) -> Optional[TokenClaims]:
        """Return the claims of a well-signed, unexpired token, else None.

        Expiry is checked against the injected clock rather than wall time.
        """
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                options={"verify_exp": False, "verify_iat": False},
            )
        except JWTError:
            return None
        sub, exp = payload.get("sub"), payload.get("exp")
        if not sub or not isinstance(exp, int):
            return None
        if exp <= timegm(self.clock().utctimetuple()):
            return None
        return TokenClaims(user_id=sub, exp=exp)
