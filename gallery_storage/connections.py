"""
Connections router: connect, OAuth callback and disconnect for storage
providers.

- Connect redirects to the provider's consent page with a CSRF state stored
  in a short-lived HttpOnly cookie.
- Callback validates state, exchanges the code, stores encrypted tokens via
  the token vault and redirects to the frontend (no tokens in the URL).
- Disconnect flips the connection to disconnected; rows are never deleted.
"""
import logging
import secrets
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from gallery_storage.config import (
    FRONTEND_URL,
    OAUTH_STATE_COOKIE_NAME,
    OAUTH_STATE_MAX_AGE,
    SECURE_COOKIES,
)
from gallery_storage.database import get_db
from gallery_storage.deps import get_context
from gallery_storage.errors import StorageError
from gallery_storage.providers import PROVIDER_CLASSES
from gallery_storage.security import client_ip, get_current_user_id
from gallery_storage.services import connections, oauth
from gallery_storage.services.context import StorageContext

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/connections")


def _cookie_kwargs(secure: bool = False) -> dict:
    return {
        "httponly": True,
        "samesite": "lax",
        "secure": secure,
        "path": "/",
    }


def _check_provider(provider: str) -> None:
    if provider not in PROVIDER_CLASSES:
        raise HTTPException(status_code=404, detail="Unknown storage provider")


def _frontend_redirect(**params: str) -> RedirectResponse:
    return RedirectResponse(url=f"{FRONTEND_URL}/settings/storage?{urlencode(params)}")


@router.get("")
def list_connections(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    return connections.get_storage_providers(db, ctx, user_id)


@router.get("/{provider}/connect")
def connect(provider: str, user_id: str = Depends(get_current_user_id)):
    """
    Redirect to the provider's OAuth consent page. The state value is bound
    to provider and stored in a cookie so the callback can reject forged
    requests.
    """
    _check_provider(provider)
    state = f"{provider}:{secrets.token_urlsafe(32)}"
    redirect = RedirectResponse(url=oauth.build_authorize_url(provider, state))
    redirect.set_cookie(
        OAUTH_STATE_COOKIE_NAME,
        state,
        max_age=OAUTH_STATE_MAX_AGE,
        **_cookie_kwargs(secure=SECURE_COOKIES),
    )
    return redirect


@router.get("/{provider}/callback")
def callback(
    request: Request,
    provider: str,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    _check_provider(provider)
    if error:
        raise HTTPException(status_code=400, detail=f"OAuth error: {error}")
    if not code or not state:
        raise HTTPException(status_code=400, detail="Missing code or state")

    state_cookie = request.cookies.get(OAUTH_STATE_COOKIE_NAME)
    if (
        not state_cookie
        or not secrets.compare_digest(state, state_cookie)
        or not state.startswith(f"{provider}:")
    ):
        raise HTTPException(status_code=400, detail="Invalid or expired state; please try connecting again")

    try:
        tokens = oauth.exchange_code(provider, code)
        ctx.token_vault.store_connection(db, user_id, provider, tokens, ip_address=client_ip(request))
        redirect = _frontend_redirect(connected=provider)
    except StorageError as e:
        logger.warning("Connecting %s failed for user %s: %s", provider, user_id, e)
        ctx.audit.log_error(
            "connect_provider", e, metadata={"provider": provider}, user_id=user_id, ip_address=client_ip(request)
        )
        redirect = _frontend_redirect(error="connect_failed", provider=provider)
    redirect.delete_cookie(OAUTH_STATE_COOKIE_NAME, path="/")
    return redirect


@router.delete("/{provider}")
def disconnect(
    provider: str,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    ctx: StorageContext = Depends(get_context),
):
    _check_provider(provider)
    ctx.token_vault.invalidate_connection(db, user_id, provider, "Disconnected by user")
    return {"ok": True, "provider": provider}
