from __future__ import annotations

import logging
import secrets
from typing import Any, Optional

import jwt
from fastapi import Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import Unauthorized


LOGGER = logging.getLogger("wagateway.api")

API_KEY_HEADER = "x-api-key"
API_KEY_QUERY = "api_key"
MISSING_CREDENTIALS = (
    "Authentication required - provide either Authorization header "
    "(Bearer token) or x-api-key header"
)


class Authenticator:
    """Request dependency accepting a bearer JWT or the shared API key.

    A bearer token wins when present: it must verify with HS256 against the
    configured secret, otherwise the request is rejected with 403 even if a
    valid API key is also supplied.
    """

    def __init__(self, *, api_key: str, jwt_secret: str) -> None:
        self._api_key = api_key
        self._jwt_secret = jwt_secret
        self._bearer = HTTPBearer(auto_error=False)

    def verify_token(self, token: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(token, self._jwt_secret, algorithms=["HS256"])
        except jwt.ExpiredSignatureError as exc:
            LOGGER.warning("event=auth_rejected reason=token_expired")
            raise Unauthorized("Invalid or expired token", status_code=403) from exc
        except jwt.InvalidTokenError as exc:
            LOGGER.warning("event=auth_rejected reason=token_invalid")
            raise Unauthorized("Invalid or expired token", status_code=403) from exc
        return payload if isinstance(payload, dict) else {"sub": payload}

    def verify_api_key(self, candidate: str) -> bool:
        if not self._api_key:
            return False
        return secrets.compare_digest(candidate.encode("utf-8"), self._api_key.encode("utf-8"))

    async def __call__(self, request: Request) -> dict[str, Any]:
        credentials: Optional[HTTPAuthorizationCredentials] = await self._bearer(request)
        if credentials is not None and credentials.credentials:
            claims = self.verify_token(credentials.credentials)
            request.state.principal = claims
            return claims

        candidate = (
            request.headers.get(API_KEY_HEADER)
            or request.query_params.get(API_KEY_QUERY)
            or ""
        ).strip()
        if candidate:
            if not self.verify_api_key(candidate):
                LOGGER.warning("event=auth_rejected reason=api_key_invalid path=%s", request.url.path)
                raise Unauthorized("Invalid API key")
            principal = {"sub": "api_key"}
            request.state.principal = principal
            return principal

        raise Unauthorized(MISSING_CREDENTIALS)


__all__ = ["Authenticator", "MISSING_CREDENTIALS"]
