"""Service-to-service tokens for the ledger's administrative routes."""
import time
from typing import Dict, Optional

import jwt

from common.settings import settings

ALGO = "HS256"
LEDGER_AUDIENCE = "ledger"

def mint_internal_jwt(aud: str, claims: Optional[Dict] = None, ttl_seconds: int = None) -> str:
    issued_at = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": aud,
        "iat": issued_at,
        "exp": issued_at + (ttl_seconds or settings.internal_jwt_ttl_seconds),
    }
    payload.update(claims or {})
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: str = LEDGER_AUDIENCE) -> Dict:
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        issuer=settings.jwt_issuer,
        options={"require": ["exp", "iat", "iss", "aud"]},
    )

def bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization[len("Bearer "):].strip() or None
