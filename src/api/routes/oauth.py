"""Broker OAuth routes.

Both routes answer with redirects back to the web app's brokers page, with
either ?success=<platform>_connected or ?error=<code>.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

import requests
from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy.orm import Session

from src.api.deps import get_db, get_http, get_optional_user
from src.config import get_settings
from src.core.brokers import (
    OAuthService,
    PlatformError,
    UnsupportedPlatform,
    redirect_error_code,
    resolve_platform,
)
from src.db.models import User

logger = logging.getLogger(__name__)
settings = get_settings()

router = APIRouter(prefix="/auth", tags=["oauth"])

# Rate limiter for broker login endpoints
limiter = Limiter(key_func=get_remote_address)


def _brokers_page(**query: str) -> RedirectResponse:
    url = f"{settings.app_base_url.rstrip('/')}/brokers"
    if query:
        url = f"{url}?{urlencode(query)}"
    return RedirectResponse(url, status_code=302)


@router.get("/{platform}")
@limiter.limit("30/minute")
def start_oauth(
    request: Request,
    platform: str,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_optional_user),
):
    """Redirect to the broker's login page."""
    if user is None:
        return _brokers_page(error="unauthorized")

    try:
        platform_id = resolve_platform(platform)
        url = OAuthService(db).build_authorization_url(platform_id, state=user.email)
    except UnsupportedPlatform:
        return _brokers_page(error="unsupported_platform")
    except PlatformError as e:
        logger.error(f"Cannot start {platform} OAuth: {e}")
        return _brokers_page(error=redirect_error_code(platform_id, e))

    return RedirectResponse(url, status_code=302)


@router.get("/{platform}/callback")
@limiter.limit("30/minute")
def oauth_callback(
    platform: str,
    request: Request,
    db: Session = Depends(get_db),
    user: Optional[User] = Depends(get_optional_user),
    http: requests.Session = Depends(get_http),
):
    """Finish the broker login and store the account."""
    try:
        platform_id = resolve_platform(platform)
    except UnsupportedPlatform:
        return _brokers_page(error="unsupported_platform")

    try:
        OAuthService(db, http=http).handle_callback(
            user.email if user else None,
            platform_id,
            dict(request.query_params),
        )
    except PlatformError as e:
        logger.error(f"{platform_id.value} callback failed: {e}")
        return _brokers_page(error=redirect_error_code(platform_id, e))
    except Exception:
        logger.exception(f"Error in {platform_id.value} callback")
        db.rollback()
        return _brokers_page(error="callback_error")

    return _brokers_page(success=f"{platform_id.value.lower()}_connected")
