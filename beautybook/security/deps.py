"""
FastAPI Security Dependencies
Resolves the Supabase user behind a bearer access token
"""

import logging

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from beautybook.config.supabase_config import get_supabase_client

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme with auto_error=False to allow custom error handling
security = HTTPBearer(auto_error=False)

ERROR_NOT_AUTHENTICATED = "not_authenticated"


def get_current_user_id(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> str:
    """
    Validate a Supabase access token and return the user's id

    The token is checked against Supabase auth, so revoked sessions and
    expired tokens are rejected without any local JWT handling.

    Raises:
        HTTPException: 401 if the token is missing, invalid or has no user
    """
    if credentials is None or not credentials.credentials:
        raise HTTPException(status_code=401, detail=ERROR_NOT_AUTHENTICATED)

    try:
        response = get_supabase_client().auth.get_user(credentials.credentials)
    except Exception as e:
        logger.warning(f"Supabase auth lookup failed: {e}")
        raise HTTPException(status_code=401, detail=ERROR_NOT_AUTHENTICATED) from None

    user = getattr(response, "user", None)
    user_id = getattr(user, "id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail=ERROR_NOT_AUTHENTICATED)

    return str(user_id)
