"""
Token vault: the only place OAuth credentials are decrypted.

Connections store Fernet-encrypted access/refresh tokens. get_valid_token
hands back a usable access token, refreshing it when it is inside the
safety margin. Two requests refreshing at once is tolerated; the later
write wins because providers treat the newest token as authoritative.
"""
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import TypeVar

from sqlalchemy import select
from sqlalchemy.orm import Session

from gallery_storage.config import TOKEN_REFRESH_MARGIN_SECONDS
from gallery_storage.crypto import InvalidToken, decrypt, encrypt
from gallery_storage.database import insert_ignore
from gallery_storage.errors import AuthenticationError, StorageError, TokenExpiredError
from gallery_storage.models import (
    CONNECTION_ACTIVE,
    CONNECTION_DISCONNECTED,
    CONNECTION_ERROR,
    StorageConnection,
    as_utc,
    utcnow,
)
from gallery_storage.providers import StorageProvider, TokenResponse, get_provider
from gallery_storage.services.audit import AuditRecorder
from gallery_storage.services.cache import CacheLayer
from gallery_storage.services.rate_governor import OperationClass, RateGovernor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TokenVault:
    def __init__(
        self,
        cache: CacheLayer,
        audit: AuditRecorder,
        rate_governor: RateGovernor,
        provider_factory: Callable[..., StorageProvider] = get_provider,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.cache = cache
        self.audit = audit
        self.rate_governor = rate_governor
        self.provider_factory = provider_factory
        self.clock = clock

    def _find(self, db: Session, user_id: str, provider: str) -> StorageConnection | None:
        return db.scalar(
            select(StorageConnection).where(
                StorageConnection.user_id == user_id,
                StorageConnection.provider == provider,
            )
        )

    def _active(self, db: Session, user_id: str, provider: str) -> StorageConnection:
        conn = self._find(db, user_id, provider)
        if conn is None or conn.status != CONNECTION_ACTIVE:
            raise AuthenticationError(f"No active {provider} connection", provider=provider)
        return conn

    # --- Connect / disconnect ---

    def store_connection(
        self,
        db: Session,
        user_id: str,
        provider: str,
        tokens: TokenResponse,
        ip_address: str | None = None,
    ) -> StorageConnection:
        """Create or replace the (user, provider) connection with fresh tokens."""
        values = {
            "user_id": user_id,
            "provider": provider,
            "access_token": encrypt(tokens.access_token),
            "refresh_token": encrypt(tokens.refresh_token) if tokens.refresh_token else None,
            "expires_at": tokens.expires_at,
            "status": CONNECTION_ACTIVE,
            "created_at": self.clock(),
        }
        inserted = insert_ignore(db, StorageConnection, values, ["user_id", "provider"])
        conn = self._find(db, user_id, provider)
        if not inserted:
            # Reconnect: refresh tokens in place, keep the old refresh token
            # when the provider did not issue a new one
            self._apply_tokens(conn, tokens)
            conn.status = CONNECTION_ACTIVE
            conn.last_error = None
            conn.last_error_at = None
        db.commit()

        self.cache.invalidate_storage_providers(user_id)
        self.audit.log_connection(user_id, provider, "connected", ip_address=ip_address)
        logger.info("Stored %s connection for user %s", provider, user_id)
        return conn

    def invalidate_connection(self, db: Session, user_id: str, provider: str, reason: str) -> None:
        """Flip the connection to disconnected and drop the cached provider list."""
        conn = self._find(db, user_id, provider)
        if conn is not None:
            conn.status = CONNECTION_DISCONNECTED
            conn.last_error = reason[:1000]
            conn.last_error_at = self.clock()
            db.commit()
        self.cache.invalidate_storage_providers(user_id)
        self.audit.log_connection(user_id, provider, "disconnected", metadata={"reason": reason[:200]})
        logger.info("Disconnected %s for user %s: %s", provider, user_id, reason)

    def mark_connection_error(
        self,
        db: Session,
        user_id: str,
        provider: str,
        error: BaseException,
        status: str | None = None,
    ) -> None:
        """Record the last error; the status only changes when one is given."""
        conn = self._find(db, user_id, provider)
        if conn is None:
            return
        conn.last_error = f"{type(error).__name__}: {error}"[:1000]
        conn.last_error_at = self.clock()
        if status is not None:
            conn.status = status
        db.commit()
        if status is not None:
            self.cache.invalidate_storage_providers(user_id)

    # --- Tokens ---

    def _apply_tokens(self, conn: StorageConnection, tokens: TokenResponse) -> None:
        conn.access_token = encrypt(tokens.access_token)
        if tokens.refresh_token:
            conn.refresh_token = encrypt(tokens.refresh_token)
        conn.expires_at = tokens.expires_at

    def get_decrypted_tokens(self, db: Session, user_id: str, provider: str) -> dict:
        conn = self._active(db, user_id, provider)
        try:
            return {
                "access_token": decrypt(conn.access_token),
                "refresh_token": decrypt(conn.refresh_token),
                "expires_at": as_utc(conn.expires_at),
            }
        except InvalidToken as e:
            self.mark_connection_error(db, user_id, provider, e, status=CONNECTION_ERROR)
            raise AuthenticationError(f"Stored {provider} credentials are unreadable", provider=provider) from e

    def get_valid_token(self, db: Session, user_id: str, provider: str, *, force_refresh: bool = False) -> str:
        """
        Return an access token usable right now.

        Refreshes when the token expires within TOKEN_REFRESH_MARGIN_SECONDS (or
        always with force_refresh). If the refresh is rejected but the current
        token has not expired yet, the current token is returned; otherwise the
        connection is disconnected and TokenExpiredError is raised.
        """
        tokens = self.get_decrypted_tokens(db, user_id, provider)
        access_token = tokens["access_token"]
        expires_at = tokens["expires_at"]
        now = self.clock()
        still_valid = expires_at is None or expires_at > now

        if not force_refresh:
            if expires_at is None or expires_at - now > timedelta(seconds=TOKEN_REFRESH_MARGIN_SECONDS):
                return access_token

        refresh_token = tokens["refresh_token"]
        if not refresh_token:
            if still_valid and not force_refresh:
                return access_token
            self.invalidate_connection(db, user_id, provider, "Access token expired and no refresh token")
            raise TokenExpiredError(f"{provider} access token expired", provider=provider)

        adapter = self.provider_factory(provider)
        try:
            fresh = self.rate_governor.execute(
                provider,
                OperationClass.TOKEN_REFRESH,
                lambda: adapter.refresh_access_token(refresh_token),
            )
        except AuthenticationError as e:
            if still_valid and not force_refresh:
                logger.warning("Refresh rejected for %s (user %s); using current token until expiry", provider, user_id)
                return access_token
            self.invalidate_connection(db, user_id, provider, f"Token refresh rejected: {e}")
            raise TokenExpiredError(f"{provider} token refresh failed", provider=provider) from e
        except StorageError as e:
            self.mark_connection_error(db, user_id, provider, e)
            raise

        conn = self._active(db, user_id, provider)
        self._apply_tokens(conn, fresh)
        conn.last_error = None
        conn.last_error_at = None
        db.commit()
        self.audit.log_connection(user_id, provider, "refreshed")
        logger.info("Refreshed %s token for user %s", provider, user_id)
        return fresh.access_token

    def with_provider(self, db: Session, user_id: str, provider: str, fn: Callable[[StorageProvider], T]) -> T:
        """
        Run fn with an authenticated adapter. An AuthenticationError from fn
        gets exactly one forced refresh and one more attempt.
        """
        adapter = self.provider_factory(provider, self.get_valid_token(db, user_id, provider))
        try:
            return fn(adapter)
        except TokenExpiredError:
            raise
        except AuthenticationError:
            logger.info("%s rejected the token for user %s; refreshing once", provider, user_id)
            adapter.access_token = self.get_valid_token(db, user_id, provider, force_refresh=True)
            return fn(adapter)
