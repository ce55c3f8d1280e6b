import time
from typing import Optional, Dict

import requests
from app.core.config import settings
from fastapi import HTTPException
from fastapi import Request
from jose import JWTError, jwt


class CurrentUser(Dict[str, str]):
    id: str
    email: Optional[str]


# Simple JWKS cache
_JWKS_CACHE: dict | None = None
_JWKS_TS: float | None = None
_JWKS_TTL = 3600.0  # seconds


def _get_jwks() -> dict:
    global _JWKS_CACHE, _JWKS_TS
    now = time.time()
    if _JWKS_CACHE and _JWKS_TS and (now - _JWKS_TS) < _JWKS_TTL:
        return _JWKS_CACHE
    jwks_url = settings.identity_jwks_url
    if not jwks_url:
        raise HTTPException(status_code=500, detail="Identity JWKS URL not configured (IDENTITY_JWKS_URL)")
    try:
        resp = requests.get(jwks_url, timeout=5)
        resp.raise_for_status()
        _JWKS_CACHE = resp.json()
        _JWKS_TS = now
        return _JWKS_CACHE
    except (requests.RequestException, ValueError) as e:
        raise HTTPException(status_code=503, detail=f"Failed to fetch JWKS: {e}")


def _verify_jwt(token: str) -> dict:
    try:
        header = jwt.get_unverified_header(token)
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token header")
    kid = header.get("kid")
    keys = _get_jwks().get("keys", [])
    public_key = next((k for k in keys if k.get("kid") == kid), None)
    if public_key is None:
        raise HTTPException(status_code=401, detail="Signing key not found")

    audience = settings.identity_audience
    try:
        return jwt.decode(
            token,
            public_key,
            algorithms=["RS256"],
            audience=audience,
            issuer=settings.identity_issuer,
            options={"verify_aud": bool(audience)},
        )
    except JWTError as e:
        raise HTTPException(status_code=401, detail=f"Token verification failed: {e}")


def get_current_user(request: Request) -> CurrentUser:
    """Validate the identity provider's ID token from Authorization: Bearer <token>."""
    auth: Optional[str] = request.headers.get("authorization")
    if not auth or not auth.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing ID token")
    token = auth.split(" ", 1)[1].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing ID token")

    payload = _verify_jwt(token)

    user_id = payload.get("sub") or payload.get("user_id")
    if not user_id:
        raise HTTPException(status_code=401, detail="Invalid token: user id not found")
    request.state.user_id = user_id

    return CurrentUser(id=user_id, email=payload.get("email"))  # type: ignore
