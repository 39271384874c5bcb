"""
Bearer token lifecycle for Act! connections.

Tokens live in a per-tenant in-memory cache and are mirrored to the
connection row, so a fresh process can reuse a token issued by an
earlier one instead of re-authenticating.

Lookup order in get():
1. In-memory token younger than the refresh threshold (50 min)
2. Persisted token that is still valid beyond the DB buffer (10 min)
3. Authenticate against {base}/authorize with Basic credentials
"""

import base64
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError

from act_billing_sync.cache import Clock, TenantCache
from act_billing_sync.config import SyncSettings
from act_billing_sync.models import Connection, ConnectionStatus
from act_billing_sync.rate_limiter import TenantRateLimiter
from act_billing_sync.store import SyncStore

logger = structlog.get_logger(__name__)

DATABASE_HEADER = "Act-Database-Name"


class CredentialCipher(Protocol):
    """Turns a stored password back into plaintext."""

    def decrypt(self, secret: str) -> str:
        ...


class PlaintextCipher:
    """Pass-through cipher for stores that keep passwords unencrypted."""

    def decrypt(self, secret: str) -> str:
        return secret


@dataclass
class CachedToken:
    """Bearer token held in memory for one tenant."""
    token: str
    issued_at: float
    expires_at: float
    connection_id: str | None = None


def count_api_call(store: SyncStore, connection_id: str) -> None:
    """Bump the connection's call counter; a store failure is logged, not raised."""
    try:
        store.increment_api_calls(connection_id)
    except SQLAlchemyError as e:
        logger.warning("Failed to count API call", connection_id=connection_id, error=str(e))


def _to_datetime(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class TokenCache:
    """
    Per-tenant bearer token cache backed by the connection store.

    Example:
        tokens = TokenCache(store, http, rate_limiter)

        token = tokens.get(connection)   # cached, promoted, or fresh
        tokens.invalidate(connection.tenant_id)  # after a 401
    """

    def __init__(
        self,
        store: SyncStore,
        http: httpx.Client,
        rate_limiter: TenantRateLimiter,
        settings: SyncSettings | None = None,
        cipher: CredentialCipher | None = None,
        clock: Clock | None = None,
    ):
        self.store = store
        self.http = http
        self.rate_limiter = rate_limiter
        self.settings = settings or SyncSettings()
        self.cipher = cipher or PlaintextCipher()

        self._clock = clock or time.time
        self._tokens: TenantCache[str, CachedToken] = TenantCache(clock=self._clock)
        self._lock = threading.Lock()
        # Tokens the vendor rejected; never promoted from the store again
        self._revoked: dict[str, str] = {}

        self._authentications = 0
        self._promotions = 0

    def get(self, connection: Connection) -> str | None:
        """Return a usable bearer token, authenticating only when needed."""
        tenant_id = connection.tenant_id

        with self._lock:
            now = self._clock()

            cached = self._tokens.get(tenant_id)
            if cached and cached.connection_id != connection.id:
                # Issued for the tenant's previous connection
                logger.info("Discarding token of replaced connection", tenant_id=tenant_id)
                self._tokens.invalidate(tenant_id)
                cached = None
            if cached and now - cached.issued_at < self.settings.token_refresh_threshold_seconds:
                logger.debug(
                    "Using cached bearer token",
                    tenant_id=tenant_id,
                    age_minutes=int((now - cached.issued_at) / 60),
                )
                return cached.token

            if (
                connection.cached_bearer_token
                and connection.token_expires_at
                and self._revoked.get(tenant_id) != connection.cached_bearer_token
            ):
                expires_at = connection.token_expires_at.timestamp()
                if now < expires_at - self.settings.token_db_buffer_seconds:
                    self._tokens.set(
                        tenant_id,
                        CachedToken(
                            token=connection.cached_bearer_token,
                            issued_at=now,
                            expires_at=expires_at,
                            connection_id=connection.id,
                        ),
                    )
                    self._promotions += 1
                    logger.debug("Promoted persisted bearer token", tenant_id=tenant_id)
                    return connection.cached_bearer_token

            return self.authenticate(connection)

    def authenticate(self, connection: Connection) -> str | None:
        """
        Obtain a fresh token from the authorize endpoint.

        On failure the connection is marked failed (HTTP error) or error
        (anything else), the tenant's cache entry is dropped, and None is
        returned.
        """
        tenant_id = connection.tenant_id
        log = logger.bind(tenant_id=tenant_id, connection_id=connection.id)
        log.info("Obtaining new bearer token")

        try:
            self.rate_limiter.check_or_wait(tenant_id)

            password = self.cipher.decrypt(connection.password_encrypted)
            credentials = base64.b64encode(
                f"{connection.username}:{password}".encode()
            ).decode()
            url = f"{connection.base_url(self.settings.default_api_base_url)}/authorize"

            self._authentications += 1
            response = self.http.get(
                url,
                headers={
                    "Authorization": f"Basic {credentials}",
                    DATABASE_HEADER: connection.database_name,
                },
            )
            count_api_call(self.store, connection.id)

            if not response.is_success:
                message = f"Auth failed: {response.status_code} {response.reason_phrase}"
                log.warning("Authentication failed", status_code=response.status_code)
                self.store.update_connection_status(
                    connection.id, ConnectionStatus.FAILED, message
                )
                self.invalidate(tenant_id)
                return None

            token = response.text.strip().strip('"')
            now = self._clock()
            expires_at = now + self.settings.token_lifetime_seconds

            self._tokens.set(
                tenant_id,
                CachedToken(
                    token=token,
                    issued_at=now,
                    expires_at=expires_at,
                    connection_id=connection.id,
                ),
            )
            self.store.update_connection_token(
                connection.id,
                token,
                expires_at=_to_datetime(expires_at),
                refreshed_at=_to_datetime(now),
            )
            self.store.update_connection_status(connection.id, ConnectionStatus.CONNECTED)

            log.info("Bearer token cached", token_length=len(token))
            return token

        except Exception as e:
            log.error("Error obtaining bearer token", error=str(e))
            self.store.update_connection_status(connection.id, ConnectionStatus.ERROR, str(e))
            self.invalidate(tenant_id)
            return None

    def invalidate(self, tenant_id: str) -> None:
        """Drop the in-memory token after the vendor rejected it."""
        cached = self._tokens.get(tenant_id)
        if cached is not None:
            self._revoked[tenant_id] = cached.token
        if self._tokens.invalidate(tenant_id):
            logger.debug("Bearer token invalidated", tenant_id=tenant_id)

    def forget(self, tenant_id: str) -> None:
        """Drop all token state for a tenant (logout, credential change)."""
        self._tokens.invalidate(tenant_id)
        self._revoked.pop(tenant_id, None)

    def get_stats(self) -> dict:
        return {
            "authentications": self._authentications,
            "promotions": self._promotions,
            "cache": self._tokens.get_stats(),
        }
