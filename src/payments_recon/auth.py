"""API key authentication and rate limiting for the reconciliation API."""

import os
import secrets
import logging

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Job runs hit the processor API; RATE_LIMIT_ENABLED=false turns limits off
limiter = Limiter(
    key_func=get_remote_address,
    enabled=os.getenv("RATE_LIMIT_ENABLED", "true").lower() != "false",
)


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Check the bearer token against the ``API_KEY`` environment variable.

    Returns:
        The verified API key.

    Raises:
        HTTPException: 500 if no key is configured, 401 if the key is wrong.
    """
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(credentials.credentials.encode(), expected_key.encode()):
        logger.warning("Rejected request with an invalid API key")
        raise HTTPException(status_code=401, detail="Invalid API key")
    return credentials.credentials
