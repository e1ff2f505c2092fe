"""
Authentication: API-key auth for the automation endpoints.

Programmatic clients and the UI send: Authorization: Bearer <API_KEY>
In development with no API_KEY set, auth is skipped for local dev.
"""

import logging
from fastapi import Depends, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ppc_automation.config import get_settings

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Returns the API key string when it matched, or "dev-no-auth" in keyless development."""
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <API_KEY>",
        )

    if credentials.credentials == api_key:
        return credentials.credentials

    logger.warning("Rejected request with an invalid API key")
    raise HTTPException(status_code=401, detail="Invalid API key.")
