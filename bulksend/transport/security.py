# bulksend/transport/security.py
"""
Security utilities for the bulk-send API.

Security features:
- Constant-time secret comparison (timing attack prevention)
- Secret strength validation (weak secret detection at startup)
- Caller identity from the trusted upstream gateway header
- OWASP security headers
- Error message sanitization in production
"""
import hmac

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from bulksend.config import settings
from bulksend.infra.logging_config import get_logger

logger = get_logger(__name__)

# Minimum secret length (32 chars)
MIN_TOKEN_LENGTH = 32
WEAK_TOKEN_PATTERNS = [
    "password", "secret", "token", "admin", "test", "demo",
    "123456", "000000", "111111", "aaaaaa",
]

USER_ID_HEADER = "X-User-Id"

cron_bearer_scheme = HTTPBearer(
    scheme_name="Cron Secret",
    description="Shared scheduler secret (without 'Bearer ' prefix)",
    auto_error=False,
)


def validate_token_strength(token: str, token_name: str = "token") -> list[str]:
    """
    Validate that a secret meets minimum security requirements.
    Returns list of warnings (empty if the secret is strong).
    """
    warnings = []

    if len(token) < MIN_TOKEN_LENGTH:
        warnings.append(
            f"{token_name} is too short ({len(token)} chars). "
            f"Minimum recommended: {MIN_TOKEN_LENGTH} chars"
        )

    token_lower = token.lower()
    for pattern in WEAK_TOKEN_PATTERNS:
        if pattern in token_lower:
            warnings.append(
                f"{token_name} contains weak pattern '{pattern}'. "
                "Use a cryptographically random token"
            )
            break

    has_upper = any(c.isupper() for c in token)
    has_lower = any(c.islower() for c in token)
    has_digit = any(c.isdigit() for c in token)

    if not (has_upper and has_lower and has_digit):
        warnings.append(
            f"{token_name} has low character diversity. "
            "Recommended: mix of uppercase, lowercase, and numbers"
        )

    return warnings


def check_configured_tokens() -> None:
    """Log warnings for weak secrets. Call from app startup."""
    if settings.cron_secret:
        for warning in validate_token_strength(settings.cron_secret, "CRON_SECRET"):
            logger.warning(f"SECURITY: {warning}")


def require_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(cron_bearer_scheme),
) -> None:
    """
    Dependency for scheduler and monitoring endpoints.

    Requires ``Authorization: Bearer <CRON_SECRET>``.  Without a
    configured secret the check is skipped outside production (config
    validation warns about it); production refuses to start without one.
    """
    if not settings.cron_secret:
        if settings.is_production:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Scheduler secret not configured",
            )
        return

    if not credentials:
        logger.warning("Cron endpoint accessed without token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(
        credentials.credentials.encode("utf-8"),
        settings.cron_secret.encode("utf-8"),
    ):
        logger.warning(
            "Invalid cron token attempt",
            extra={"token_prefix": credentials.credentials[:4] if len(credentials.credentials) >= 4 else "***"}
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_current_user_id(
    request: Request,
    x_user_id: str | None = Header(default=None, alias=USER_ID_HEADER),
) -> str:
    """
    Caller identity, as asserted by the upstream auth gateway.

    The gateway authenticates the session and forwards the user id; this
    service trusts the header and only checks ownership.
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
        )
    request.state.user_id = user_id
    return user_id


class SecurityHeaders:
    """OWASP recommended security headers for API responses."""

    @staticmethod
    def add_security_headers(response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"

        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"

        # HSTS (only in production with HTTPS)
        if settings.is_production or settings.is_staging:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"

        if "Server" in response.headers:
            del response.headers["Server"]

        return response


def sanitize_error_message(error: Exception, is_production: bool) -> str:
    """
    Sanitize error messages for external responses.
    In production: Generic messages
    In dev: Detailed messages
    """
    if not is_production:
        return str(error)

    generic_messages = {
        "ValueError": "Invalid input",
        "KeyError": "Invalid request",
        "ConnectionError": "Service temporarily unavailable",
        "TimeoutError": "Request timeout",
    }

    return generic_messages.get(type(error).__name__, "An error occurred")
