"""
Security and Authentication
Handles JWT validation for sync triggers

- tenant_id comes from the Supabase JWT app_metadata.company_id claim
- every sync request is scoped to that tenant; a connection owned by another
  tenant looks exactly like a missing one
"""
import logging
from typing import Dict
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client

from app.core.dependencies import get_supabase

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer()


# ============================================================================
# JWT AUTHENTICATION (Supabase)
# ============================================================================

async def get_current_user_context(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
    supabase: Client = Depends(get_supabase)
) -> Dict[str, str]:
    """
    Get user context (user_id + tenant_id) for a request.

    Flow:
    1. Validate JWT with Supabase Auth
    2. Extract user_id from the sub claim
    3. Extract tenant_id from app_metadata.company_id

    Returns:
        dict with user_id, tenant_id, email
    """
    if not credentials:
        logger.warning("No authorization credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header required"
        )

    try:
        response = supabase.auth.get_user(credentials.credentials)

        if not response or not response.user:
            logger.warning("JWT validation failed: no user returned")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid authentication token"
            )

        user = response.user
        app_metadata = user.app_metadata or {}
        tenant_id = app_metadata.get("company_id")

        if not tenant_id:
            logger.error(f"User {user.id} has no company_id in JWT metadata")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="User not assigned to any tenant. Contact support."
            )

        logger.info(f"✅ User authenticated: {sanitize_for_logging(user.email or '')} (tenant: {tenant_id[:8]}...)")

        return {
            "user_id": user.id,
            "tenant_id": tenant_id,
            "email": user.email,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"JWT validation error: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed"
        )


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def sanitize_for_logging(text: str, max_length: int = 50) -> str:
    """
    Mask PII before it reaches the logs.

    Example:
        "user@example.com" -> "u***@example.com"
    """
    if not text:
        return ""

    if len(text) > max_length:
        text = text[:max_length] + "..."

    if "@" in text:
        local, _, domain = text.partition("@")
        masked_local = local[0] + "***" if len(local) > 1 else local
        text = f"{masked_local}@{domain}"

    return text
