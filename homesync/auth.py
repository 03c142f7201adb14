import logging
import secrets
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from . import config

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


async def require_admin(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> None:
    """Admin bearer token check for operational routes"""
    if not config.SYNC_ADMIN_TOKEN:
        logger.error("❌ SYNC_ADMIN_TOKEN not configured")
        raise HTTPException(status_code=503, detail="Admin access not configured")

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing bearer token")

    if not secrets.compare_digest(credentials.credentials, config.SYNC_ADMIN_TOKEN):
        logger.warning("⚠️ Rejected calendar sync admin request with invalid token")
        raise HTTPException(status_code=403, detail="Invalid admin token")
