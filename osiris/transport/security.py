# osiris/transport/security.py
"""
Request authentication for every inbound surface.

- Dashboard API:       Authorization: Bearer <ADMIN_TOKEN>
- Cron endpoints:      Authorization: Bearer <CRON_SECRET>
- /metrics, /health/detailed: METRICS_TOKEN, or internal network when unset
- QStash callbacks:    Upstash-Signature JWT (HS256, current or next key)
- Housecall Pro:       X-HCP-Signature, hex HMAC-SHA256 of the raw body
- Telegram:            X-Telegram-Bot-Api-Secret-Token
- Stripe:              verified in stripe_client with the stripe library

All secret comparisons are constant-time.
"""
import base64
import hashlib
import hmac
import ipaddress
import secrets
from functools import lru_cache

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from osiris.config import settings
from osiris.infra.logging_config import get_logger

logger = get_logger(__name__)

# 32 bytes of entropy, matching generate_secure_token()
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = ("password", "secret", "token", "admin", "test", "demo", "osiris", "123456", "000000")

QSTASH_ISSUER = "Upstash"
QSTASH_CLOCK_LEEWAY_SECONDS = 10


def _bearer(name: str) -> HTTPBearer:
    return HTTPBearer(
        scheme_name=name,
        description=f"{name} (without the 'Bearer ' prefix)",
        auto_error=False,
    )


bearer_scheme = _bearer("Admin Token")
cron_bearer_scheme = _bearer("Cron Secret")
metrics_bearer_scheme = _bearer("Metrics Token")


class InvalidSignature(Exception):
    """A webhook or callback signature did not verify."""


# -----------------------------------------------------------------------------
# Token hygiene
# -----------------------------------------------------------------------------

def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """Human-readable problems with a configured secret; empty when it looks random."""
    problems = []
    if len(token) < MIN_TOKEN_LENGTH:
        problems.append(f"{token_name} is too short ({len(token)} < {MIN_TOKEN_LENGTH} chars)")

    lowered = token.lower()
    weak = next((p for p in WEAK_TOKEN_PATTERNS if p in lowered), None)
    if weak:
        problems.append(f"{token_name} contains weak pattern '{weak}'")

    classes = (str.isupper, str.islower, str.isdigit)
    if not all(any(test(c) for c in token) for test in classes):
        problems.append(f"{token_name} has low character diversity (mix upper, lower and digits)")
    return problems


def generate_secure_token(length: int = 32) -> str:
    """URL-safe random token for ADMIN_TOKEN, CRON_SECRET and METRICS_TOKEN."""
    return secrets.token_urlsafe(length)


def check_configured_tokens() -> None:
    """Log warnings for weak tokens. Called once at startup."""
    configured = {
        "ADMIN_TOKEN": settings.admin_token,
        "CRON_SECRET": settings.cron_secret,
        "METRICS_TOKEN": settings.metrics_token,
    }
    for name, value in configured.items():
        if not value:
            continue
        for problem in validate_token_strength(value, name):
            logger.warning(f"Weak secret: {problem}")


# -----------------------------------------------------------------------------
# Bearer tokens
# -----------------------------------------------------------------------------

def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _check_bearer(
    credentials: HTTPAuthorizationCredentials | None,
    expected: str | None,
    label: str,
) -> None:
    if not expected:
        logger.critical(f"{label} not configured but a protected endpoint was accessed")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service unavailable")

    if not credentials:
        logger.warning(f"{label}: request without authorization header")
        raise _unauthorized("Authentication required")

    if not hmac.compare_digest(credentials.credentials.encode(), expected.encode()):
        logger.warning(f"{label}: invalid token attempt")
        raise _unauthorized("Invalid credentials")


def require_admin(credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme)):
    """
    Dashboard API guard.

    Client example:
        curl -H "Authorization: Bearer $ADMIN_TOKEN" http://localhost:8000/api/jobs
    """
    _check_bearer(credentials, settings.admin_token, "ADMIN_TOKEN")


def require_cron_auth(credentials: HTTPAuthorizationCredentials | None = Depends(cron_bearer_scheme)):
    """Cron guard. An unset CRON_SECRET refuses every request."""
    if not settings.cron_secret:
        logger.error("CRON_SECRET not configured, refusing cron request")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
    _check_bearer(credentials, settings.cron_secret, "CRON_SECRET")


# -----------------------------------------------------------------------------
# Internal network / metrics
# -----------------------------------------------------------------------------

@lru_cache(maxsize=1)
def _get_internal_networks() -> tuple:
    parsed = []
    for cidr in filter(None, (part.strip() for part in settings.internal_networks.split(","))):
        try:
            parsed.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError:
            logger.warning(f"Ignoring invalid INTERNAL_NETWORKS entry: {cidr!r}")
    return tuple(parsed)


def get_client_ip(request: Request) -> str:
    """
    Real client IP. X-Forwarded-For, then X-Real-IP, are honoured only with
    TRUST_PROXY_HEADERS=true; otherwise clients could spoof them.
    """
    if settings.trust_proxy_headers:
        forwarded = (request.headers.get("X-Forwarded-For") or "").split(",")[0].strip()
        real_ip = (request.headers.get("X-Real-IP") or "").strip()
        if forwarded or real_ip:
            return forwarded or real_ip
    return request.client.host if request.client else "unknown"


def is_internal_ip(ip_str: str) -> bool:
    try:
        address = ipaddress.ip_address(ip_str)
    except ValueError:
        return False
    return any(address in network for network in _get_internal_networks())


def require_metrics_auth(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(metrics_bearer_scheme),
):
    """
    Guard for /metrics and /health/detailed: METRICS_TOKEN as a Bearer token
    when set, otherwise the caller must sit on an internal network.
    """
    if settings.metrics_token:
        _check_bearer(credentials, settings.metrics_token, "METRICS_TOKEN")
        return

    client_ip = get_client_ip(request)
    if not is_internal_ip(client_ip):
        logger.warning(f"Metrics access denied from {client_ip}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


# -----------------------------------------------------------------------------
# QStash (Upstash-Signature JWT)
# -----------------------------------------------------------------------------
# Claims: iss="Upstash", sub=<destination URL>, exp/nbf, body=base64url(sha256(body)).
# Two signing keys are configured during rotation; either may sign.
# -----------------------------------------------------------------------------

def _body_hash(body: bytes) -> str:
    return base64.urlsafe_b64encode(hashlib.sha256(body).digest()).decode().rstrip("=")


def verify_qstash_jwt(token: str, body: bytes, keys: list[str], url: str | None = None) -> dict:
    """
    Verify one Upstash-Signature token against the current and next keys.

    Returns the decoded claims.

    Raises:
        InvalidSignature: no key verifies, or claims do not match body / URL
    """
    if not keys:
        raise InvalidSignature("No QStash signing keys configured")

    claims = None
    last_error: Exception | None = None
    for key in keys:
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=["HS256"],
                issuer=QSTASH_ISSUER,
                leeway=QSTASH_CLOCK_LEEWAY_SECONDS,
                options={"require": ["iss", "exp", "body"], "verify_aud": False},
            )
            break
        except jwt.PyJWTError as exc:
            last_error = exc

    if claims is None:
        raise InvalidSignature(f"JWT verification failed: {last_error}")

    if not hmac.compare_digest(str(claims.get("body", "")).rstrip("="), _body_hash(body)):
        raise InvalidSignature("Body hash mismatch")

    if url is not None and claims.get("sub") != url:
        raise InvalidSignature(f"Subject mismatch: {claims.get('sub')}")

    return claims


def _destination_url(request: Request) -> str | None:
    if not settings.public_base_url:
        return None
    return settings.public_base_url.rstrip("/") + request.url.path


async def verify_qstash_request(request: Request) -> bytes:
    """
    Verify a QStash callback and return the raw body.

    Unsigned requests are accepted only when no signing keys are configured
    or webhook validation is disabled.

    Raises:
        InvalidSignature
    """
    body = await request.body()
    signature = request.headers.get("Upstash-Signature")
    keys = settings.qstash_signing_keys

    if not signature:
        if keys and settings.require_webhook_validation:
            raise InvalidSignature("Missing Upstash-Signature header")
        return body

    if not keys:
        logger.warning("Upstash-Signature present but no signing keys configured; not verified")
        return body

    verify_qstash_jwt(signature, body, keys, _destination_url(request))
    return body


# -----------------------------------------------------------------------------
# Housecall Pro / Telegram
# -----------------------------------------------------------------------------

def compute_hcp_signature(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_hcp_signature(body: bytes, signature: str | None) -> None:
    """
    Check X-HCP-Signature (hex digest, optional ``sha256=`` prefix).

    Raises:
        InvalidSignature
    """
    secret = settings.hcp_webhook_secret
    if not secret:
        return

    if not signature:
        if settings.require_webhook_validation:
            raise InvalidSignature("Missing X-HCP-Signature header")
        return

    provided = signature.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]

    if not hmac.compare_digest(provided.lower(), compute_hcp_signature(secret, body)):
        raise InvalidSignature("HCP signature mismatch")


def verify_telegram_secret(header_value: str | None) -> bool:
    expected = settings.telegram_webhook_secret
    if not expected:
        return True
    if not header_value:
        return False
    return hmac.compare_digest(header_value.encode(), expected.encode())


# -----------------------------------------------------------------------------
# Responses
# -----------------------------------------------------------------------------

_STATIC_RESPONSE_HEADERS = {
    "X-Frame-Options": "DENY",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Cross-Origin-Opener-Policy": "same-origin",
}

_HSTS = "max-age=31536000; includeSubDomains; preload"

# Exception class name -> message shown to production clients
_PUBLIC_ERROR_MESSAGES = {
    "ValueError": "Invalid input",
    "KeyError": "Invalid request",
    "PostgresError": "Service temporarily unavailable",
    "ConnectionError": "Service temporarily unavailable",
    "TimeoutError": "Request timeout",
}


class SecurityHeaders:
    @staticmethod
    def add_security_headers(response):
        headers = response.headers
        for name, value in _STATIC_RESPONSE_HEADERS.items():
            headers[name] = value
        # The SSE stream sets its own
        if "Cache-Control" not in headers:
            headers["Cache-Control"] = "no-store"
        if settings.is_production or settings.is_staging:
            headers["Strict-Transport-Security"] = _HSTS
        if "Server" in headers:
            del headers["Server"]
        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """Generic messages in production, the raw error text elsewhere."""
    if is_production:
        return _PUBLIC_ERROR_MESSAGES.get(type(error).__name__, "An error occurred")
    return str(error)
