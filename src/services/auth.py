"""Authentication for scheduler-triggered (cron) endpoints."""
import logging
import secrets

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from src.config import Settings, get_settings

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def verify_cron_secret(token: str, secret: str) -> bool:
    return secrets.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))


def require_cron_auth(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> None:
    """FastAPI dependency: require `Authorization: Bearer <CRON_SECRET>`.

    In production an unset secret is a configuration error. Outside
    production an unset secret disables the check so jobs can be triggered
    locally.
    """
    if not settings.cron_secret:
        if settings.is_production:
            logger.error("CRON_SECRET is not configured in production environment")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Server configuration error",
            )
        logger.debug("Cron auth skipped - CRON_SECRET not set in development")
        return

    if credentials is None or not verify_cron_secret(credentials.credentials, settings.cron_secret):
        logger.warning(f"Unauthorized cron request attempt (auth header present: {credentials is not None})")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")
