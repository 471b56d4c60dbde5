import time
from typing import Any, Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .models import Identity

bearer = HTTPBearer(auto_error=False)


class AuthVerifier:
    """Issues and verifies the service's own access tokens."""

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        ttl_seconds: int = 3600,
        issuer: str = "virtual-library",
        clock_skew_seconds: int = 30,
    ):
        self.secret = secret
        self.algorithm = algorithm
        self.ttl_seconds = ttl_seconds
        self.issuer = issuer
        self.clock_skew_seconds = clock_skew_seconds

    def issue(self, user: Identity) -> str:
        now = int(time.time())
        payload = {
            "id": user.id,
            "email": user.email,
            "iss": self.issuer,
            "iat": now,
            "exp": now + self.ttl_seconds,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm, headers={"typ": "JWT"})

    def verify(self, token: str) -> Identity:
        try:
            header = jwt.get_unverified_header(token)
        except Exception as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token header") from exc
        if header.get("typ", "JWT").upper() != "JWT":
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
        if header.get("alg") != self.algorithm:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token algorithm")

        try:
            claims: dict[str, Any] = jwt.decode(
                token,
                key=self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                leeway=self.clock_skew_seconds,
                options={"require": ["exp", "iss"]},
            )
            return Identity(id=claims["id"], email=claims["email"])
        except Exception as exc:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from exc

    def __call__(self, creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Identity:
        if creds is None or creds.scheme.lower() != "bearer":
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Not authenticated",
                headers={"WWW-Authenticate": "Bearer"},
            )
        return self.verify(creds.credentials)
