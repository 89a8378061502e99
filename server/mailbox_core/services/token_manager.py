import asyncio
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable
from weakref import WeakValueDictionary

from mailbox_core.core.constants import ACCOUNTS_TABLE, AccountStatus
from mailbox_core.core.errors import NoValidCredentialError, NotFoundError, PersistenceError
from mailbox_core.core.logger import get_logger
from mailbox_core.schemas.account import DelegatedCredentials, MailboxAccount, format_timestamp
from mailbox_core.services.gmail import GmailProvider

logger = get_logger(__name__)


class TokenState(str, Enum):
    FRESH = "fresh"
    MISSING = "missing"
    EXPIRING = "expiring"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenLifecycleManager:
    """
    Keeps the stored Gmail access token usable.

    Refreshes for one account are serialized by a per-account lock. The
    caller that wins the lock refreshes and persists; callers queued behind
    it re-read the account and find the fresh token, so a refresh token is
    never spent twice concurrently. Different accounts never share a lock.
    """
    def __init__(self, store, provider: GmailProvider, skew_seconds: int = 60,
                 clock: Callable[[], datetime] = _utcnow):
        self.store = store
        self.provider = provider
        self.skew = timedelta(seconds=skew_seconds)
        self.clock = clock
        self._locks: "WeakValueDictionary[str, asyncio.Lock]" = WeakValueDictionary()

    def _lock_for(self, account_id: str) -> asyncio.Lock:
        lock = self._locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[account_id] = lock
        return lock

    def classify(self, creds: DelegatedCredentials) -> TokenState:
        if not creds.access_token_enc:
            return TokenState.MISSING
        # No recorded expiry is treated as expiring: refresh when we can.
        if creds.token_expires_at is None or creds.token_expires_at - self.clock() <= self.skew:
            return TokenState.EXPIRING
        return TokenState.FRESH

    def _reload(self, account: MailboxAccount) -> DelegatedCredentials:
        record = self.store.get(ACCOUNTS_TABLE, {"id": account.id, "user_id": account.user_id})
        if record is None:
            raise NotFoundError("Mailbox account not found.")
        current = MailboxAccount.from_record(record)
        if not isinstance(current.credentials, DelegatedCredentials):
            raise NoValidCredentialError("Mailbox account is not an OAuth account.")
        # Another caller may have hit a revoked refresh token while we waited.
        if current.status is AccountStatus.ERROR:
            raise NoValidCredentialError("Mailbox needs to be reconnected before it can send.")
        return current.credentials

    async def ensure_fresh(self, account: MailboxAccount) -> DelegatedCredentials:
        """Returns credentials whose access token may be used right now."""
        creds = account.credentials
        if not isinstance(creds, DelegatedCredentials):
            raise NoValidCredentialError("Mailbox account is not an OAuth account.")
        if self.classify(creds) is TokenState.FRESH:
            return creds

        async with self._lock_for(account.id):
            creds = self._reload(account)
            state = self.classify(creds)
            if state is TokenState.FRESH:
                return creds

            if not creds.refresh_token_enc:
                still_valid = (
                    state is TokenState.EXPIRING
                    and (creds.token_expires_at is None or creds.token_expires_at > self.clock())
                )
                if still_valid:
                    logger.warning("Account %s has no refresh token; using its current access token", account.id)
                    return creds
                raise NoValidCredentialError(
                    "No valid Gmail access token available. Please reconnect the mailbox."
                )

            logger.info("Refreshing access token for account %s (%s)", account.id, state.value)
            refreshed = await self.provider.refresh_access_token(creds.refresh_token_enc)

            patch = {
                "access_token_enc": refreshed.access_token_enc,
                "token_expires_at": format_timestamp(refreshed.token_expires_at),
            }
            if refreshed.refresh_token_enc:
                patch["refresh_token_enc"] = refreshed.refresh_token_enc
            updated = self.store.update(ACCOUNTS_TABLE, {"id": account.id, "user_id": account.user_id}, patch)
            if not updated:
                raise PersistenceError("Refreshed token could not be saved.")

            logger.info("Token refresh successful for account %s", account.id)
            return creds.model_copy(update={
                "access_token_enc": refreshed.access_token_enc,
                "token_expires_at": refreshed.token_expires_at,
                "refresh_token_enc": refreshed.refresh_token_enc or creds.refresh_token_enc,
            })
