from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from review_exchange.errors import ApiError

ADMIN_ROLE = "admin"


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _split_csv(raw: str) -> list[str]:
    return [x.strip() for x in raw.split(",") if x.strip()]


def _b64url_decode(raw: str) -> bytes:
    padded = raw + "=" * ((4 - len(raw) % 4) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def _forbidden(message: str) -> ApiError:
    return ApiError(
        code="AUTH_FORBIDDEN",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def redact_sensitive(value: object) -> object:
    sensitive_keys = {"authorization", "token", "secret", "password", "x-internal-token"}
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            if str(key).lower() in sensitive_keys:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    return value


@dataclass
class AuthContext:
    account_id: str
    roles: set[str] = field(default_factory=set)
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str]
    internal_token: str
    log_redaction_enabled: bool

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = env.get("JWT_ISSUER", "").strip()
        audience = env.get("JWT_AUDIENCE", "").strip()
        shared_secret = env.get("JWT_SHARED_SECRET", "").strip()
        return cls(
            enabled=bool(issuer or audience or shared_secret),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_split_csv(env.get("JWT_REQUIRED_CLAIMS", "sub,exp")),
            internal_token=env.get("REX_INTERNAL_TOKEN", "").strip(),
            log_redaction_enabled=_env_bool(env, "SECURITY_LOG_REDACTION_ENABLED", True),
        )


def _roles_from_claims(claims: dict[str, Any]) -> set[str]:
    roles = claims.get("roles")
    if isinstance(roles, list):
        return {str(x) for x in roles if str(x).strip()}
    if isinstance(roles, str):
        return set(_split_csv(roles))
    role = claims.get("role")
    return {str(role)} if role else set()


def _parse_token_parts(token: str) -> tuple[dict[str, Any], dict[str, Any], str, str]:
    parts = token.split(".")
    if len(parts) != 3:
        raise _unauthorized("invalid token format")
    header_raw, payload_raw, signature_raw = parts
    try:
        header_obj = json.loads(_b64url_decode(header_raw))
        payload_obj = json.loads(_b64url_decode(payload_raw))
    except (json.JSONDecodeError, ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(header_obj, dict) or not isinstance(payload_obj, dict):
        raise _unauthorized("invalid token payload")
    return header_obj, payload_obj, f"{header_raw}.{payload_raw}", signature_raw


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    """Verify an HS256 bearer token issued by the identity subsystem."""
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    prefix = "Bearer "
    if not authorization.startswith(prefix):
        raise _unauthorized("invalid Authorization header")
    token = authorization[len(prefix) :].strip()
    if not token:
        raise _unauthorized("empty bearer token")
    header_obj, payload_obj, signing_input, signature_raw = _parse_token_parts(token)
    if str(header_obj.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    expected = _b64url_encode(
        hmac.new(
            cfg.shared_secret.encode("utf-8"),
            signing_input.encode("ascii"),
            hashlib.sha256,
        ).digest()
    )
    if not hmac.compare_digest(expected, signature_raw):
        raise _unauthorized("invalid token signature")

    now_ts = int(datetime.now(UTC).timestamp())
    exp = _as_int(payload_obj.get("exp"))
    if exp is None or exp <= now_ts:
        raise _unauthorized("token expired")
    nbf = _as_int(payload_obj.get("nbf"))
    if nbf is not None and nbf > now_ts:
        raise _unauthorized("token not yet valid")
    if cfg.issuer and str(payload_obj.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        aud = payload_obj.get("aud")
        if isinstance(aud, list):
            aud_ok = cfg.audience in {str(x) for x in aud}
        else:
            aud_ok = str(aud or "") == cfg.audience
        if not aud_ok:
            raise _unauthorized("jwt audience mismatch")
    for claim in cfg.required_claims:
        if claim not in payload_obj:
            raise _unauthorized(f"missing required claim: {claim}")

    account_id = str(payload_obj.get("sub") or "").strip()
    if not account_id:
        raise _unauthorized("missing subject claim")
    return AuthContext(account_id=account_id, roles=_roles_from_claims(payload_obj), claims=payload_obj)


def auth_from_headers(*, headers: Mapping[str, str], cfg: JwtSecurityConfig) -> AuthContext:
    """Resolve the caller; with JWT disabled the x-account-id and x-roles headers are trusted."""
    if cfg.enabled:
        return parse_and_validate_bearer_token(authorization=headers.get("authorization"), cfg=cfg)
    account_id = str(headers.get("x-account-id") or "").strip()
    if not account_id:
        raise _unauthorized("missing x-account-id header")
    return AuthContext(account_id=account_id, roles=set(_split_csv(str(headers.get("x-roles") or ""))))


def require_admin(auth: AuthContext | None) -> AuthContext:
    if auth is None or not auth.is_admin:
        raise _forbidden("admin role required")
    return auth


def require_internal_token(*, provided: str | None, cfg: JwtSecurityConfig) -> None:
    if not cfg.internal_token:
        raise _forbidden("internal endpoints are disabled")
    if not provided or not hmac.compare_digest(provided, cfg.internal_token):
        raise _forbidden("internal endpoint forbidden")
