"""
OAuth2 authorization-code flow for connecting storage providers.

Builds the consent URL and exchanges the callback code for tokens. The
CSRF state value is generated and checked by the connections router.
"""
from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from gallery_storage.config import (
    DROPBOX_APP_KEY,
    DROPBOX_APP_SECRET,
    DROPBOX_REDIRECT_URI,
    GOOGLE_DRIVE_CLIENT_ID,
    GOOGLE_DRIVE_CLIENT_SECRET,
    GOOGLE_DRIVE_REDIRECT_URI,
)
from gallery_storage.errors import ValidationError
from gallery_storage.providers import TokenResponse
from gallery_storage.providers import dropbox, google_drive
from gallery_storage.providers.base import exchange_token

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
# drive.file: only files and folders this app creates
GOOGLE_DRIVE_SCOPE = "https://www.googleapis.com/auth/drive.file"
DROPBOX_AUTH_URL = "https://www.dropbox.com/oauth2/authorize"


def _oauth_app(provider: str) -> dict:
    apps = {
        google_drive.GoogleDriveProvider.name: {
            "client_id": GOOGLE_DRIVE_CLIENT_ID,
            "client_secret": GOOGLE_DRIVE_CLIENT_SECRET,
            "redirect_uri": GOOGLE_DRIVE_REDIRECT_URI,
            "token_url": google_drive.TOKEN_URL,
        },
        dropbox.DropboxProvider.name: {
            "client_id": DROPBOX_APP_KEY,
            "client_secret": DROPBOX_APP_SECRET,
            "redirect_uri": DROPBOX_REDIRECT_URI,
            "token_url": dropbox.TOKEN_URL,
        },
    }
    app = apps.get(provider)
    if app is None:
        raise ValidationError(f"Unsupported storage provider: {provider}")
    if not app["client_id"] or not app["client_secret"] or not app["redirect_uri"]:
        raise ValidationError(f"{provider} is not configured on this server")
    return app


def build_authorize_url(provider: str, state: str) -> str:
    app = _oauth_app(provider)
    if provider == google_drive.GoogleDriveProvider.name:
        params = {
            "client_id": app["client_id"],
            "redirect_uri": app["redirect_uri"],
            "response_type": "code",
            "scope": GOOGLE_DRIVE_SCOPE,
            # offline + consent so Google issues a refresh token every time
            "access_type": "offline",
            "prompt": "consent",
            "state": state,
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"
    params = {
        "client_id": app["client_id"],
        "redirect_uri": app["redirect_uri"],
        "response_type": "code",
        "token_access_type": "offline",
        "state": state,
    }
    return f"{DROPBOX_AUTH_URL}?{urlencode(params)}"


def exchange_code(provider: str, code: str) -> TokenResponse:
    """Trade the callback code for tokens. Rejected codes raise AuthenticationError."""
    if not code:
        raise ValidationError("Missing authorization code")
    app = _oauth_app(provider)
    data = exchange_token(
        app["token_url"],
        {
            "code": code,
            "client_id": app["client_id"],
            "client_secret": app["client_secret"],
            "redirect_uri": app["redirect_uri"],
            "grant_type": "authorization_code",
        },
        provider,
    )
    expires_in = int(data.get("expires_in", 3600))
    return TokenResponse(
        access_token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=datetime.now(UTC) + timedelta(seconds=expires_in),
    )
