from __future__ import annotations

import asyncio
import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional


SCRYPT_N = 16384
SCRYPT_R = 8
SCRYPT_P = 1
SCRYPT_DKLEN = 64


class AuthError(RuntimeError):
    pass


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    s = (data or "").strip()
    pad = "=" * (-len(s) % 4)
    try:
        return base64.urlsafe_b64decode(s + pad)
    except Exception as e:
        raise AuthError(f"Invalid base64url: {e}")


# ---- Primitives ----


def random_token(n_bytes: int) -> str:
    return secrets.token_bytes(max(1, int(n_bytes))).hex()


def hmac_sign(key: str, message: str) -> str:
    return hmac.new(
        str(key).encode("utf-8"), str(message).encode("utf-8"), hashlib.sha256
    ).hexdigest()


def constant_time_hex_equal(a_hex: str, b_hex: str) -> bool:
    """
    Compare two hex strings without short-circuiting on the first mismatch.

    When the decoded lengths differ a dummy comparison of the same cost is still
    performed before returning False. Malformed hex never compares equal.
    """
    try:
        a = bytes.fromhex(str(a_hex or ""))
        b = bytes.fromhex(str(b_hex or ""))
    except (ValueError, TypeError):
        return False
    if len(a) != len(b):
        hmac.compare_digest(a, bytes(len(a)))
        return False
    return hmac.compare_digest(a, b)


def derive_key_hash(secret: str, salt: str) -> str:
    dk = hashlib.scrypt(
        str(secret).encode("utf-8"),
        salt=str(salt).encode("utf-8"),
        n=SCRYPT_N,
        r=SCRYPT_R,
        p=SCRYPT_P,
        maxmem=64 * 1024 * 1024,
        dklen=SCRYPT_DKLEN,
    )
    return binascii.hexlify(dk).decode("ascii")


async def derive_key_hash_async(secret: str, salt: str) -> str:
    # scrypt is CPU and memory hard; keep it off the event loop.
    return await asyncio.to_thread(derive_key_hash, secret, salt)


async def verify_key_hash(secret: str, salt: str, expected_hex: str) -> bool:
    try:
        computed = await derive_key_hash_async(secret, salt)
    except (ValueError, TypeError, MemoryError):
        return False
    return constant_time_hex_equal(computed, expected_hex)


# ---- ID tokens ----


def jwt_sign_hs256(message: bytes, secret: str) -> str:
    mac = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()
    return _b64url_encode(mac)


def jwt_encode_hs256(
    payload: Dict[str, Any],
    *,
    secret: str,
    ttl_s: int,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
) -> str:
    now = int(time.time())
    ttl_s = max(10, int(ttl_s))

    header = {"typ": "JWT", "alg": "HS256"}
    body: Dict[str, Any] = dict(payload or {})
    body.setdefault("iat", now)
    body.setdefault("exp", now + ttl_s)
    if issuer:
        body.setdefault("iss", str(issuer))
    if audience:
        body.setdefault("aud", str(audience))

    h = _b64url_encode(
        json.dumps(header, separators=(",", ":"), sort_keys=True).encode("utf-8")
    )
    p = _b64url_encode(
        json.dumps(body, separators=(",", ":"), sort_keys=True).encode("utf-8")
    )
    sig = jwt_sign_hs256(f"{h}.{p}".encode("ascii"), secret)
    return f"{h}.{p}.{sig}"


@dataclass(frozen=True)
class JWTClaims:
    subject: str
    issued_at: int
    expires_at: int
    raw: Dict[str, Any]


def _audience_ok(claim: Any, audience: str) -> bool:
    if isinstance(claim, list):
        return any(str(x) == audience for x in claim)
    return str(claim or "") == audience


def jwt_decode_hs256(
    token: str,
    *,
    secret: str,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
    leeway_s: int = 15,
) -> JWTClaims:
    t = (token or "").strip()
    parts = t.split(".")
    if len(parts) != 3:
        raise AuthError("Token is not a JWT")
    h_b64, p_b64, sig_b64 = parts

    header_raw = _b64url_decode(h_b64)
    payload_raw = _b64url_decode(p_b64)
    try:
        header = json.loads(header_raw.decode("utf-8"))
        payload = json.loads(payload_raw.decode("utf-8"))
    except Exception as e:
        raise AuthError(f"Invalid JWT JSON: {e}")

    if not isinstance(header, dict) or header.get("alg") != "HS256":
        raise AuthError("Unsupported JWT alg")
    if not isinstance(payload, dict):
        raise AuthError("Invalid JWT payload")

    expected = jwt_sign_hs256(f"{h_b64}.{p_b64}".encode("ascii"), secret)
    if not hmac.compare_digest(str(sig_b64), str(expected)):
        raise AuthError("Invalid JWT signature")

    now = int(time.time())
    try:
        exp = int(payload.get("exp"))
        iat = int(payload.get("iat", 0))
    except Exception:
        raise AuthError("Invalid exp/iat claim")

    if exp <= now - int(leeway_s):
        raise AuthError("JWT expired")
    if issuer and str(payload.get("iss") or "") != str(issuer):
        raise AuthError("Invalid JWT issuer")
    if audience and not _audience_ok(payload.get("aud"), str(audience)):
        raise AuthError("Invalid JWT audience")

    sub = str(payload.get("sub") or "").strip()
    if not sub:
        raise AuthError("Missing sub claim")

    return JWTClaims(subject=sub, issued_at=iat, expires_at=exp, raw=payload)


class IdTokenVerifier:
    """Verifies end-user ID tokens and yields the authenticated uid."""

    def __init__(
        self,
        *,
        secret: str,
        issuer: Optional[str] = None,
        audience: Optional[str] = None,
        leeway_s: int = 15,
    ) -> None:
        if not secret:
            raise ValueError("ID token secret is required")
        self._secret = str(secret)
        self._issuer = issuer or None
        self._audience = audience or None
        self._leeway_s = int(leeway_s)

    def verify(self, token: str) -> Dict[str, Any]:
        claims = jwt_decode_hs256(
            token,
            secret=self._secret,
            issuer=self._issuer,
            audience=self._audience,
            leeway_s=self._leeway_s,
        )
        return {"uid": claims.subject, "claims": claims.raw}

    def issue(self, uid: str, *, ttl_s: int = 3600, **extra: Any) -> str:
        payload: Dict[str, Any] = dict(extra)
        payload["sub"] = str(uid)
        return jwt_encode_hs256(
            payload,
            secret=self._secret,
            ttl_s=ttl_s,
            issuer=self._issuer,
            audience=self._audience,
        )
