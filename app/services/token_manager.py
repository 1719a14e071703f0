"""
Token lifecycle for the access-control vendor API.

Credentials (per branch) are exchanged for a short-lived bearer token which is
cached in memory, keyed by tenant. A cached token is reused only while it is
more than the safety margin (5 min by default) away from expiry and only for
the credential that produced it; editing or deactivating the credential makes
the next get_token() discard the entry.

Exchange failures surface as AuthenticationError and are never retried here:
blind retries against the vendor's auth endpoint risk locking the account, so
the retry decision belongs to the caller.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from app.config import settings
from app.exceptions import AuthenticationError, ConfigurationError, DeviceApiError, TokenRejectedError
from app.models.access_token import AccessToken
from app.models.integration_credential import IntegrationCredential
from app.services.credential_store import credential_fingerprint, get_active_credential
from app.services.hik_client import HikCloudClient
from app.utils.logger import get_logger, mask

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CachedToken:
    tenant_id: str
    token: str
    token_type: str
    issued_at: datetime
    expires_at: datetime
    fingerprint: str = ""

    def is_usable(self, now: datetime, margin: timedelta) -> bool:
        return now < self.expires_at - margin


class TokenCache:
    """In-memory store of the current token per tenant. One instance per TokenManager."""

    def __init__(self):
        self._entries: dict[str, CachedToken] = {}

    def get(self, tenant_id: str) -> Optional[CachedToken]:
        return self._entries.get(tenant_id)

    def put(self, entry: CachedToken):
        self._entries[entry.tenant_id] = entry

    def discard(self, tenant_id: str) -> bool:
        return self._entries.pop(tenant_id, None) is not None

    def __len__(self):
        return len(self._entries)


def _to_int(value) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class TokenManager:
    def __init__(
        self,
        client: HikCloudClient,
        session_factory: async_sessionmaker,
        cache: Optional[TokenCache] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
        margin_seconds: Optional[int] = None,
    ):
        self.client = client
        self.session_factory = session_factory
        self.cache = cache if cache is not None else TokenCache()
        self.clock = clock
        self.margin = timedelta(seconds=settings.TOKEN_EXPIRY_MARGIN_SECONDS
                                if margin_seconds is None else margin_seconds)
        # One exchange in flight per tenant; concurrent callers wait and reuse it
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Public contract ──────────────────────────────────────────────────

    async def get_token(self, tenant_id: str) -> str:
        """
        Return a usable bearer token for the tenant, exchanging credentials if needed.

        Raises:
            ConfigurationError: no active credential (no network call is made)
            AuthenticationError: the exchange failed; nothing is cached
        """
        async with self.session_factory() as db:
            credential = await get_active_credential(db, tenant_id)
            if credential is None:
                if self.cache.discard(tenant_id):
                    logger.info(f"Dropped cached token for {tenant_id}: credential no longer active")
                raise ConfigurationError(f"Access control not configured for branch {tenant_id}")

            fingerprint = credential_fingerprint(credential)
            cached = self._usable_entry(tenant_id, fingerprint)
            if cached:
                return cached.token

            async with self._lock_for(tenant_id):
                # Another task may have completed the exchange while we waited
                cached = self._usable_entry(tenant_id, fingerprint)
                if cached:
                    return cached.token
                entry = await self._exchange(db, tenant_id, credential, fingerprint)
                return entry.token

    def invalidate(self, tenant_id: str):
        """Drop the cached token, e.g. after the device API rejected it."""
        if self.cache.discard(tenant_id):
            logger.info(f"Invalidated cached token for {tenant_id}")

    async def refresh(self, tenant_id: str) -> str:
        self.invalidate(tenant_id)
        return await self.get_token(tenant_id)

    def token_status(self, tenant_id: str) -> dict:
        entry = self.cache.get(tenant_id)
        if entry is None:
            return {"tenant_id": tenant_id, "has_token": False, "is_valid": False,
                    "expires_at": None, "expires_in": None}
        now = self.clock()
        return {
            "tenant_id": tenant_id,
            "has_token": True,
            "is_valid": entry.is_usable(now, self.margin),
            "token_type": entry.token_type,
            "issued_at": entry.issued_at,
            "expires_at": entry.expires_at,
            "expires_in": int((entry.expires_at - now).total_seconds()),
        }

    # ── Internals ────────────────────────────────────────────────────────

    def _lock_for(self, tenant_id: str) -> asyncio.Lock:
        return self._locks.setdefault(tenant_id, asyncio.Lock())

    def _usable_entry(self, tenant_id: str, fingerprint: str) -> Optional[CachedToken]:
        entry = self.cache.get(tenant_id)
        if entry is None:
            return None
        if entry.fingerprint != fingerprint:
            logger.info(f"Credential for {tenant_id} changed, discarding cached token")
            self.cache.discard(tenant_id)
            return None
        if not entry.is_usable(self.clock(), self.margin):
            logger.debug(f"Cached token for {tenant_id} expires at {entry.expires_at}, refreshing")
            return None
        return entry

    async def _exchange(self, db: AsyncSession, tenant_id: str,
                        credential: IntegrationCredential, fingerprint: str) -> CachedToken:
        logger.info(f"Requesting token for {tenant_id} (appKey={mask(credential.app_key)})")
        issued_at = self.clock()
        try:
            body = await self.client.exchange_token(credential.base_url, credential.app_key,
                                                    credential.app_secret)
        except DeviceApiError as e:
            logger.error(f"Token exchange failed for {tenant_id}: {e}")
            raise AuthenticationError(e.message, code=e.code) from e

        token = body.get("accessToken")
        if not token:
            logger.error(f"Token exchange for {tenant_id} returned no accessToken")
            raise AuthenticationError("Token response did not contain an access token", code="NO_TOKEN")

        expires_in = _to_int(body.get("expiresIn"))
        expire_epoch_ms = _to_int(body.get("expireTime"))
        if expires_in is not None:
            expires_at = issued_at + timedelta(seconds=expires_in)
        elif expire_epoch_ms is not None:
            expires_at = datetime.fromtimestamp(expire_epoch_ms / 1000, tz=timezone.utc).replace(tzinfo=None)
            expires_in = int((expires_at - issued_at).total_seconds())
        else:
            expires_in = settings.DEFAULT_TOKEN_TTL_SECONDS
            expires_at = issued_at + timedelta(seconds=expires_in)

        entry = CachedToken(
            tenant_id=tenant_id,
            token=token,
            token_type=body.get("tokenType") or "Bearer",
            issued_at=issued_at,
            expires_at=expires_at,
            fingerprint=fingerprint,
        )
        await self._persist(db, entry, expires_in, body)
        self.cache.put(entry)
        logger.info(f"Token issued for {tenant_id}, expires at {expires_at:%Y-%m-%d %H:%M:%S}")
        return entry

    async def _persist(self, db: AsyncSession, entry: CachedToken, expires_in: int, body: dict):
        db.add(AccessToken(
            tenant_id=entry.tenant_id,
            access_token=entry.token,
            expires_in=expires_in,
            expire_time=entry.expires_at,
            token_type=entry.token_type,
            scope=body.get("scope"),
            refresh_token=body.get("refreshToken"),
            updated_at=entry.issued_at,
        ))
        try:
            await db.commit()
        except SQLAlchemyError as e:
            # The cache stays authoritative; a lost audit row must not fail the caller
            await db.rollback()
            logger.error(f"Could not persist token for {entry.tenant_id}: {e}", exc_info=True)


async def with_token_retry(token_manager: TokenManager, tenant_id: str,
                           call: Callable[[str], Awaitable[T]]) -> T:
    """
    Run `call` with the tenant's current token. If the device API rejects the
    token, invalidate it and retry exactly once with a fresh one; a second
    rejection propagates as TokenRejectedError.
    """
    token = await token_manager.get_token(tenant_id)
    try:
        return await call(token)
    except TokenRejectedError:
        logger.info(f"[{tenant_id}] Token rejected by device API, re-authenticating once")
        token_manager.invalidate(tenant_id)
    token = await token_manager.get_token(tenant_id)
    return await call(token)
