"""Session authentication for checkout initialization.

Supabase JWT-based session auth for user-authenticated operations.

FLOW:
1. User signs in through Supabase on the frontend -> receives JWT access_token
2. Frontend calls POST /payments/initialize with Authorization: Bearer <jwt>
3. Dependency validates the JWT with Supabase and extracts user_id
4. Returns CallerContext(user_id, email)

Verification and webhook endpoints carry no caller identity: the reference
and the webhook signature are their credentials.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client

from payrecon_api.errors import NotConfigured, Unauthorized

logger = logging.getLogger(__name__)

# HTTPBearer scheme for session JWT
session_security = HTTPBearer(auto_error=False, description="Supabase JWT Session Token")


@dataclass(frozen=True)
class CallerContext:
    """Authenticated end user."""

    user_id: str
    email: Optional[str] = None


def get_supabase_client(request: Request) -> Client:
    """Supabase client built at startup and stored on app.state.

    Raises:
        NotConfigured: Supabase credentials are missing
    """
    client = getattr(request.app.state, "supabase", None)
    if client is None:
        raise NotConfigured(
            "SUPABASE_URL and SB_PUBLISHABLE_KEY (or legacy SUPABASE_ANON_KEY) are required "
            "to authenticate callers."
        )
    return client


def get_caller_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(session_security),
) -> CallerContext:
    """Validate the caller's Supabase JWT.

    Raises:
        Unauthorized: Missing, invalid or expired token
        NotConfigured: Supabase credentials are missing
    """
    if not credentials:
        raise Unauthorized("Missing Authorization header. Please log in first.")

    supabase = get_supabase_client(request)

    try:
        # Supabase validates JWT signature and expiration
        user_response = supabase.auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning(
            "SESSION_JWT_VALIDATION_FAILED",
            extra={"error_type": type(e).__name__},
        )
        raise Unauthorized("Session validation failed. Please log in again.") from e

    if not user_response or not user_response.user:
        raise Unauthorized("Invalid or expired session token. Please log in again.")

    user = user_response.user
    logger.info(
        "SESSION_JWT_VALIDATED",
        extra={"user_id": user.id},
    )
    return CallerContext(user_id=user.id, email=user.email)
