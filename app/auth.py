import hmac
import os
from typing import Any, Dict, Optional

from fastapi import HTTPException
from jose import jwt
from jose.exceptions import JWTError
from starlette.requests import Request


class AuthConfig:
    def __init__(self) -> None:
        self.secret = str(os.getenv("API_SECRET", "")).strip()
        self.jwt_audience = str(os.getenv("API_JWT_AUDIENCE", "")).strip()

    @property
    def configured(self) -> bool:
        return bool(self.secret)


class AuthService:
    """Bearer-token check for the API.

    A token is accepted when it equals ``API_SECRET`` or when it is an HS256 JWT
    signed with it. With no secret configured every request is let through.
    """

    def __init__(self, cfg: AuthConfig) -> None:
        self.cfg = cfg

    def _decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        options = {"verify_aud": bool(self.cfg.jwt_audience)}
        try:
            claims = jwt.decode(
                token,
                self.cfg.secret,
                algorithms=["HS256"],
                audience=self.cfg.jwt_audience or None,
                options=options,
            )
        except JWTError:
            return None
        return claims if isinstance(claims, dict) else None

    def verify_bearer(self, authorization: str) -> bool:
        if not self.cfg.configured:
            return True
        raw = str(authorization or "").strip()
        scheme, _, token = raw.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return False
        token = token.strip()
        if hmac.compare_digest(token.encode("utf-8"), self.cfg.secret.encode("utf-8")):
            return True
        return self._decode_jwt(token) is not None

    def mint_token(self, subject: str, expires_at: int) -> str:
        claims: Dict[str, Any] = {"sub": subject, "exp": int(expires_at)}
        if self.cfg.jwt_audience:
            claims["aud"] = self.cfg.jwt_audience
        return jwt.encode(claims, self.cfg.secret, algorithm="HS256")


def require_bearer(request: Request, auth: AuthService) -> None:
    if not auth.verify_bearer(request.headers.get("authorization", "")):
        raise HTTPException(status_code=401, detail="Unauthorized")
