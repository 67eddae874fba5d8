# neighbrs/auth.py
"""Bearer-token auth: turns a Supabase access token into the caller's user id.

The id is all the engine needs; whether the caller acts as creator or helper
is decided per route.
"""

import logging
import time
from functools import lru_cache
from typing import Any, Dict, Optional

import requests
from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings, get_settings

logger = logging.getLogger("uvicorn")

security = HTTPBearer()

JWKS_TTL_S = 600


class SupabaseTokenVerifier:
    """Verifies HS256 tokens with the project secret and RS256 tokens against
    the project's JWKS. Anything else, or an HS256 token with no secret
    configured, is checked by asking Supabase's /user endpoint.
    """

    def __init__(self, settings: Settings, clock=time.time) -> None:
        if not settings.supabase_project_ref:
            raise HTTPException(status_code=500, detail="SUPABASE_PROJECT_REF not set")
        self.issuer = f"https://{settings.supabase_project_ref}.supabase.co/auth/v1"
        self._anon_key = settings.supabase_anon_key
        self._secret = settings.supabase_jwt_secret
        self._clock = clock
        self._jwks: Optional[Dict[str, Any]] = None
        self._jwks_at = 0.0

    def user_id(self, token: str) -> str:
        try:
            header = jwt.get_unverified_header(token)
        except JWTError:
            return self._ask_supabase(token)

        alg = (header.get("alg") or "").upper()
        if alg == "HS256" and self._secret:
            return self._decode(token, self._secret, alg)
        if alg == "RS256":
            return self._decode(token, self._signing_key(header.get("kid")), alg)
        return self._ask_supabase(token)

    def _decode(self, token: str, key: Any, alg: str) -> str:
        try:
            claims = jwt.decode(token, key, algorithms=[alg], options={"verify_aud": False}, issuer=self.issuer)
        except JWTError as e:
            raise HTTPException(status_code=401, detail=f"Invalid token ({alg}): {e}")
        sub = claims.get("sub")
        if not sub:
            raise HTTPException(status_code=401, detail="Token missing subject (sub)")
        return sub

    def _signing_key(self, kid: Optional[str]) -> Dict[str, Any]:
        now = self._clock()
        if self._jwks is None or now - self._jwks_at > JWKS_TTL_S:
            headers = {"apikey": self._anon_key, "Authorization": f"Bearer {self._anon_key}"} if self._anon_key else {}
            resp = requests.get(f"{self.issuer}/.well-known/jwks.json", headers=headers, timeout=10)
            resp.raise_for_status()
            self._jwks, self._jwks_at = resp.json(), now
        for key in self._jwks.get("keys", []):
            if key.get("kid") == kid:
                return key
        raise HTTPException(status_code=401, detail="Signing key not found")

    def _ask_supabase(self, token: str) -> str:
        r = requests.get(
            f"{self.issuer}/user",
            headers={"Authorization": f"Bearer {token}", "apikey": self._anon_key or ""},
            timeout=10,
        )
        if r.status_code != 200:
            logger.warning(f"Supabase rejected token ({r.status_code})")
            raise HTTPException(status_code=401, detail="Could not verify token with Supabase")
        data = r.json() or {}
        uid = data.get("id") or (data.get("user") or {}).get("id")
        if not uid:
            raise HTTPException(status_code=401, detail="User id not found from Supabase")
        return uid


@lru_cache
def get_verifier() -> SupabaseTokenVerifier:
    return SupabaseTokenVerifier(get_settings())


def verify_and_get_user_id(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    verifier: SupabaseTokenVerifier = Depends(get_verifier),
) -> str:
    return verifier.user_id(credentials.credentials)
