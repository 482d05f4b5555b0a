import time, jwt, hmac, hashlib, json
from typing import Any, Dict, Optional, Union
from common.settings import settings

ALGO = "HS256"
SIGNATURE_HEADER = "X-Ledger-Signature"

def mint_user_jwt(sub: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "sub": sub,
        "iat": now,
        "exp": now + settings.jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def mint_internal_jwt(aud: str, claims: Optional[Dict] = None) -> str:
    now = int(time.time())
    payload = {
        "iss": settings.jwt_issuer,
        "aud": aud,
        "iat": now,
        "exp": now + settings.internal_jwt_ttl_seconds,
        **(claims or {}),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=ALGO)

def verify_token(token: str, audience: Optional[str] = None) -> Dict:
    options = {"require": ["exp", "iat", "iss"]}
    return jwt.decode(
        token,
        settings.jwt_secret,
        algorithms=[ALGO],
        audience=audience,
        options=options,
        issuer=settings.jwt_issuer,
    )

def canonical_json(payload: Union[Dict[str, Any], str, bytes]) -> bytes:
    """Byte form that gets signed and sent; keys sorted, no whitespace"""
    if isinstance(payload, bytes):
        return payload
    if isinstance(payload, str):
        return payload.encode("utf-8")
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")

def sign_payload(payload: Union[Dict[str, Any], str, bytes], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_json(payload), hashlib.sha256).hexdigest()

def verify_signature(payload: Union[Dict[str, Any], str, bytes], signature: Optional[str], secret: Optional[str]) -> bool:
    """Constant-time check; a missing signature or secret never verifies"""
    if not signature or not secret:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected.encode("ascii"), signature.strip().lower().encode("utf-8"))
